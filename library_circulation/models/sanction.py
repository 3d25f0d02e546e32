import uuid
from datetime import datetime
from typing import List, Optional

from models.audit_log import AuditLog
from models.database import get_db, to_db_time, transaction
from models.errors import NotFoundError, ValidationError
from models.fine import from_cents


class Sanction:
    """A time-bounded restriction on a patron's borrowing privilege.

    Attributes:
        id (str): Unique sanction identifier.
        patron_id (str): Restricted patron.
        sanction_type (str): Kind of restriction ('suspension', ...).
        start_time (str): Start of the window.
        end_time (str): End of the window (inclusive).
        reason (str): Why it was imposed.
        state (str): 'active' or 'lifted'.
    """

    def __init__(self, id: str, patron_id: str, sanction_type: str,
                 start_time: str, end_time: str, reason: str,
                 state: str) -> None:
        self.id = id
        self.patron_id = patron_id
        self.sanction_type = sanction_type
        self.start_time = start_time
        self.end_time = end_time
        self.reason = reason
        self.state = state

    @staticmethod
    def impose(patron_id: str, sanction_type: str, start: datetime,
               end: datetime, reason: str = '',
               actor_id: Optional[str] = None,
               now: Optional[datetime] = None) -> 'Sanction':
        """Record a sanction covering ``start``..``end``."""
        from models.patron import Patron

        if end < start:
            raise ValidationError('Sanction cannot end before it starts')
        if not sanction_type:
            raise ValidationError('Sanction type is required')

        sanction_id = str(uuid.uuid4())
        with transaction() as db:
            Patron.require(patron_id)
            db.execute('''
                INSERT INTO sanctions
                (id, patron_id, sanction_type, start_time, end_time, reason, state)
                VALUES (?, ?, ?, ?, ?, ?, 'active')
            ''', (sanction_id, patron_id, sanction_type, to_db_time(start),
                  to_db_time(end), reason))
            sanction = Sanction.get_by_id(sanction_id)
            AuditLog.record('sanction', sanction_id, 'Create', sanction.to_dict(),
                            actor_id=actor_id, timestamp=now)
        return sanction

    @staticmethod
    def get_by_id(sanction_id: str) -> Optional['Sanction']:
        db = get_db()
        row = db.execute('SELECT * FROM sanctions WHERE id = ?', (sanction_id,)).fetchone()
        if row:
            return Sanction(**dict(row))
        return None

    @staticmethod
    def get_patron_sanctions(patron_id: str) -> List['Sanction']:
        db = get_db()
        rows = db.execute('''
            SELECT * FROM sanctions WHERE patron_id = ?
            ORDER BY start_time DESC
        ''', (patron_id,)).fetchall()
        return [Sanction(**dict(row)) for row in rows]

    @staticmethod
    def lift(sanction_id: str, actor_id: Optional[str] = None,
             now: Optional[datetime] = None) -> 'Sanction':
        """End a sanction early. Lifting twice is harmless."""
        with transaction() as db:
            sanction = Sanction.get_by_id(sanction_id)
            if not sanction:
                raise NotFoundError(f'Sanction {sanction_id} not found')
            if sanction.state == 'lifted':
                return sanction

            before = sanction.to_dict()
            db.execute("UPDATE sanctions SET state = 'lifted' WHERE id = ?", (sanction_id,))
            sanction.state = 'lifted'
            AuditLog.record('sanction', sanction_id, 'Update', sanction.to_dict(),
                            before_state=before, actor_id=actor_id, timestamp=now)
        return sanction

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'patron_id': self.patron_id,
            'sanction_type': self.sanction_type,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'reason': self.reason,
            'state': self.state,
        }


class SanctionPolicy:
    """Borrowing eligibility derived from sanctions and fine history."""

    @staticmethod
    def is_blocked(patron_id: str, at_time: Optional[datetime] = None) -> bool:
        """True if an active sanction covers ``at_time``."""
        stamp = to_db_time(at_time or datetime.now())
        db = get_db()
        row = db.execute('''
            SELECT COUNT(*) AS count FROM sanctions
            WHERE patron_id = ? AND state = 'active'
              AND start_time <= ? AND end_time >= ?
        ''', (patron_id, stamp, stamp)).fetchone()
        return row['count'] > 0

    @staticmethod
    def outstanding_balance_cents(patron_id: str) -> int:
        db = get_db()
        row = db.execute('''
            SELECT COALESCE(SUM(f.amount_cents), 0)
                 - COALESCE(SUM((SELECT COALESCE(SUM(p.amount_cents), 0)
                                 FROM payments p WHERE p.fine_id = f.id)), 0) AS balance
            FROM fines f
            WHERE f.patron_id = ? AND f.state = 'pending'
        ''', (patron_id,)).fetchone()
        return int(row['balance'] or 0)

    @staticmethod
    def outstanding_balance(patron_id: str) -> float:
        """Unpaid remainder across all of the patron's pending fines."""
        return from_cents(SanctionPolicy.outstanding_balance_cents(patron_id))
