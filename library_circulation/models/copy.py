"""Copy ledger.

Tracks the physical state of every copy:

    available   - on the shelf, counted in the title's available_copies
    on_loan     - held by a patron under an open loan
    reserved    - held at the desk for the head of the reservation queue
    maintenance - out of circulation

Every state change goes through ``Copy._transition``, which updates the copy
only if it is still in the expected state, recomputes the title counter and
appends an audit event, all on the caller's transaction.
"""
import logging
import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Type

from models.audit_log import AuditLog
from models.database import get_db, to_db_time, transaction
from models.errors import (CirculationError, CopyNotFound, CopyUnavailable,
                           InvalidState, TitleNotFound, ValidationError)
from models.title import Title

logger = logging.getLogger(__name__)

AVAILABLE = 'available'
ON_LOAN = 'on_loan'
RESERVED = 'reserved'
MAINTENANCE = 'maintenance'

COPY_STATES = (AVAILABLE, ON_LOAN, RESERVED, MAINTENANCE)


class Copy:
    """Represents one physical copy of a title.

    Attributes:
        id (str): Unique copy identifier.
        title_id (str): Owning title.
        barcode (str): Shelf barcode (unique).
        state (str): One of COPY_STATES.
        acquired_at (str): Acquisition timestamp.
    """

    def __init__(self, id: str, title_id: str, barcode: str, state: str,
                 acquired_at: str) -> None:
        self.id = id
        self.title_id = title_id
        self.barcode = barcode
        self.state = state
        self.acquired_at = acquired_at

    @property
    def is_available(self) -> bool:
        return self.state == AVAILABLE

    @staticmethod
    def get_by_id(copy_id: str) -> Optional['Copy']:
        db = get_db()
        row = db.execute('SELECT * FROM copies WHERE id = ?', (copy_id,)).fetchone()
        if row:
            return Copy(**dict(row))
        return None

    @staticmethod
    def get_by_barcode(barcode: str) -> Optional['Copy']:
        db = get_db()
        row = db.execute('SELECT * FROM copies WHERE barcode = ?', (barcode,)).fetchone()
        if row:
            return Copy(**dict(row))
        return None

    @staticmethod
    def get_for_title(title_id: str, state: Optional[str] = None) -> List['Copy']:
        db = get_db()
        if state:
            rows = db.execute('''
                SELECT * FROM copies WHERE title_id = ? AND state = ?
                ORDER BY barcode
            ''', (title_id, state)).fetchall()
        else:
            rows = db.execute(
                'SELECT * FROM copies WHERE title_id = ? ORDER BY barcode',
                (title_id,)
            ).fetchall()
        return [Copy(**dict(row)) for row in rows]

    @staticmethod
    def _require(copy_id: str) -> 'Copy':
        copy = Copy.get_by_id(copy_id)
        if not copy:
            raise CopyNotFound(f'Copy {copy_id} not found')
        return copy

    @staticmethod
    def _transition(copy: 'Copy', expected: Iterable[str], new_state: str,
                    error: Type[CirculationError] = InvalidState,
                    actor_id: Optional[str] = None,
                    now: Optional[datetime] = None) -> 'Copy':
        """Move ``copy`` to ``new_state`` if it is in one of ``expected``.

        The update is conditional on the stored state, so a copy changed by a
        transaction that committed first is never overwritten.
        """
        expected = tuple(expected)
        db = get_db()
        placeholders = ', '.join('?' for _ in expected)
        cursor = db.execute(
            f'UPDATE copies SET state = ? WHERE id = ? AND state IN ({placeholders})',
            (new_state, copy.id) + expected
        )
        if cursor.rowcount != 1:
            current = Copy.get_by_id(copy.id)
            raise error(
                f'Copy {copy.barcode} is {current.state if current else "missing"}, '
                f'expected {" or ".join(expected)}'
            )

        before = copy.to_dict()
        copy.state = new_state
        Title.recompute_available(copy.title_id)
        AuditLog.record('copy', copy.id, 'Update', copy.to_dict(),
                        before_state=before, actor_id=actor_id, timestamp=now)
        return copy

    # ==================== LEDGER OPERATIONS ====================

    @staticmethod
    def acquire(title_id: str, barcode: str, actor_id: Optional[str] = None,
                now: Optional[datetime] = None) -> 'Copy':
        """Add a newly acquired copy to a title.

        The copy is placed like any freed copy: it goes to the head of the
        reservation queue if someone is waiting, otherwise on the shelf. It
        is created directly in that state.
        """
        from models.reservation import Reservation

        barcode = (barcode or '').strip()
        if not barcode:
            raise ValidationError('Barcode cannot be empty')

        now = now or datetime.now()
        copy_id = str(uuid.uuid4())

        with transaction() as db:
            if not Title.get_by_id(title_id):
                raise TitleNotFound(f'Title {title_id} not found')
            if Copy.get_by_barcode(barcode):
                raise ValidationError(f'Barcode {barcode} is already registered')

            head = Reservation.get_next_in_queue(title_id, now)
            db.execute('''
                INSERT INTO copies (id, title_id, barcode, state, acquired_at)
                VALUES (?, ?, ?, ?, ?)
            ''', (copy_id, title_id, barcode, RESERVED if head else AVAILABLE,
                  to_db_time(now)))
            db.execute(
                'UPDATE titles SET total_copies = total_copies + 1 WHERE id = ?',
                (title_id,)
            )
            Title.recompute_available(title_id)
            copy = Copy.get_by_id(copy_id)
            AuditLog.record('copy', copy_id, 'Create', copy.to_dict(),
                            actor_id=actor_id, timestamp=now)
            if head:
                head.hold(copy, actor_id=actor_id, now=now)

        logger.info('Acquired copy %s for title %s', barcode, title_id)
        return Copy.get_by_id(copy_id)

    @staticmethod
    def checkout(copy_id: str, patron_id: str, actor_id: Optional[str] = None,
                 now: Optional[datetime] = None) -> 'Copy':
        """Mark a copy as on loan.

        An available copy goes to anyone. A reserved copy goes only to the
        patron whose reservation holds it, and only before the hold lapses;
        the hold is marked claimed in the same transaction.

        Raises:
            CopyNotFound: Unknown copy.
            CopyUnavailable: Copy cannot be lent to this patron right now.
        """
        from models.reservation import Reservation

        now = now or datetime.now()
        with transaction():
            copy = Copy._require(copy_id)

            if copy.state == RESERVED:
                hold = Reservation.get_active_hold(copy.id)
                if not hold or hold.patron_id != patron_id:
                    raise CopyUnavailable(f'Copy {copy.barcode} is held for another patron')
                if hold.is_hold_expired(now):
                    raise CopyUnavailable(f'The hold on copy {copy.barcode} has expired')
                hold.claim(actor_id=actor_id, now=now)
                return Copy._transition(copy, (RESERVED,), ON_LOAN,
                                        error=CopyUnavailable, actor_id=actor_id, now=now)

            return Copy._transition(copy, (AVAILABLE,), ON_LOAN,
                                    error=CopyUnavailable, actor_id=actor_id, now=now)

    @staticmethod
    def release(copy_id: str, actor_id: Optional[str] = None,
                now: Optional[datetime] = None):
        """Bring a lent copy back into circulation.

        The queue head for the title gets the copy as a hold if there is one;
        otherwise it becomes available. Returns the fulfilled reservation or
        None.

        Raises:
            CopyNotFound: Unknown copy.
            InvalidState: The copy is not on loan (including a repeated
                release of a copy that is already back).
        """
        from models.reservation import Reservation

        now = now or datetime.now()
        with transaction():
            copy = Copy._require(copy_id)
            if copy.state != ON_LOAN:
                raise InvalidState(f'Copy {copy.barcode} is {copy.state}, not on loan')
            return Reservation.try_fulfill(copy.title_id, copy, actor_id=actor_id, now=now)

    @staticmethod
    def send_to_maintenance(copy_id: str, actor_id: Optional[str] = None,
                            now: Optional[datetime] = None) -> 'Copy':
        """Take an available copy out of circulation."""
        with transaction():
            copy = Copy._require(copy_id)
            return Copy._transition(copy, (AVAILABLE,), MAINTENANCE,
                                    actor_id=actor_id, now=now)

    @staticmethod
    def return_from_maintenance(copy_id: str, actor_id: Optional[str] = None,
                                now: Optional[datetime] = None):
        """Put a repaired copy back, serving the reservation queue first."""
        from models.reservation import Reservation

        now = now or datetime.now()
        with transaction():
            copy = Copy._require(copy_id)
            if copy.state != MAINTENANCE:
                raise InvalidState(f'Copy {copy.barcode} is {copy.state}, not in maintenance')
            return Reservation.try_fulfill(copy.title_id, copy, actor_id=actor_id, now=now)

    def get_title(self) -> Optional[Title]:
        return Title.get_by_id(self.title_id)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title_id': self.title_id,
            'barcode': self.barcode,
            'state': self.state,
            'acquired_at': self.acquired_at,
        }
