"""Audit trail outbox.

Every committed mutation leaves one event row in ``audit_outbox``. The row is
written on the same connection and inside the same transaction as the
business change, so it commits or rolls back with it. Delivery to the
external sink happens afterwards through ``AuditLog.dispatch_pending``:
at-least-once, in id order, and a failing sink only leaves the row pending.
"""
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from models.database import get_db, to_db_time, transaction

logger = logging.getLogger(__name__)

AuditSink = Callable[[Dict[str, Any]], None]


class AuditLog:
    """Represents one audit event in the outbox.

    Attributes:
        id (int): Outbox sequence number.
        entity_type (str): Kind of entity touched ('loan', 'copy', ...).
        entity_id (str): Identifier of the entity.
        action (str): 'Create' or 'Update'.
        before_state (dict): Snapshot before the change (None for Create).
        after_state (dict): Snapshot after the change.
        actor_id (str): Who asked for the change (optional).
        timestamp (str): When the change was committed.
        delivered_at (str): When the sink acknowledged it (None if pending).
        attempts (int): Failed delivery attempts so far.
    """

    def __init__(self, id: int, entity_type: str, entity_id: str, action: str,
                 before_state: Optional[str], after_state: str,
                 actor_id: Optional[str], timestamp: str,
                 delivered_at: Optional[str], attempts: int) -> None:
        self.id = id
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.action = action
        self.before_state = json.loads(before_state) if before_state else None
        self.after_state = json.loads(after_state)
        self.actor_id = actor_id
        self.timestamp = timestamp
        self.delivered_at = delivered_at
        self.attempts = int(attempts)

    @staticmethod
    def record(entity_type: str, entity_id: str, action: str,
               after_state: Dict[str, Any],
               before_state: Optional[Dict[str, Any]] = None,
               actor_id: Optional[str] = None,
               timestamp: Optional[datetime] = None) -> None:
        """Append an event to the outbox on the current transaction."""
        db = get_db()
        db.execute('''
            INSERT INTO audit_outbox
            (entity_type, entity_id, action, before_state, after_state,
             actor_id, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (entity_type, entity_id, action,
              json.dumps(before_state, default=str) if before_state is not None else None,
              json.dumps(after_state, default=str),
              actor_id,
              to_db_time(timestamp or datetime.now())))

    @staticmethod
    def get_pending(limit: int = 100) -> List['AuditLog']:
        db = get_db()
        rows = db.execute('''
            SELECT * FROM audit_outbox
            WHERE delivered_at IS NULL
            ORDER BY id ASC
            LIMIT ?
        ''', (limit,)).fetchall()
        return [AuditLog(**dict(row)) for row in rows]

    @staticmethod
    def get_for_entity(entity_type: str, entity_id: str) -> List['AuditLog']:
        db = get_db()
        rows = db.execute('''
            SELECT * FROM audit_outbox
            WHERE entity_type = ? AND entity_id = ?
            ORDER BY id ASC
        ''', (entity_type, entity_id)).fetchall()
        return [AuditLog(**dict(row)) for row in rows]

    @staticmethod
    def dispatch_pending(sink: AuditSink, limit: int = 100) -> int:
        """Deliver pending events to ``sink`` in order.

        Stops at the first failure so later events are not delivered ahead
        of an earlier one. Returns the number of events delivered.
        """
        delivered = 0
        for event in AuditLog.get_pending(limit):
            try:
                sink(event.to_event())
            except Exception as e:
                logger.warning('Audit sink rejected event %s: %s', event.id, e)
                with transaction() as db:
                    db.execute(
                        'UPDATE audit_outbox SET attempts = attempts + 1 WHERE id = ?',
                        (event.id,)
                    )
                break

            with transaction() as db:
                db.execute('''
                    UPDATE audit_outbox SET delivered_at = ?
                    WHERE id = ? AND delivered_at IS NULL
                ''', (to_db_time(datetime.now()), event.id))
            delivered += 1

        if delivered:
            logger.debug('Dispatched %d audit events', delivered)
        return delivered

    def to_event(self) -> Dict[str, Any]:
        """Shape handed to the audit sink."""
        return {
            'id': self.id,
            'entityType': self.entity_type,
            'entityId': self.entity_id,
            'action': self.action,
            'beforeState': self.before_state,
            'afterState': self.after_state,
            'actorId': self.actor_id,
            'timestamp': self.timestamp,
        }

    def to_dict(self) -> dict:
        return {
            **self.to_event(),
            'delivered_at': self.delivered_at,
            'attempts': self.attempts,
        }


def logging_sink(event: Dict[str, Any]) -> None:
    """Audit sink that writes events to the application log."""
    logger.info(
        'AUDIT %s %s/%s by %s: %s',
        event['action'], event['entityType'], event['entityId'],
        event['actorId'] or '-', event['afterState'],
    )
