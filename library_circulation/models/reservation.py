import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from models.audit_log import AuditLog
from models.database import from_db_time, get_db, to_db_time, transaction
from models.errors import (DuplicateReservation, ReservationNotActive,
                           ReservationNotFound, TitleAvailable, TitleNotFound,
                           ValidationError)
from models.system_config import SystemConfig
from models.title import Title

logger = logging.getLogger(__name__)

PENDING = 'pending'
FULFILLED = 'fulfilled'
EXPIRED = 'expired'
CANCELLED = 'cancelled'

# Queue order: higher priority first, then earliest request, then insertion.
QUEUE_ORDER = 'priority DESC, request_time ASC, rowid ASC'


class Reservation:
    """Represents a patron's place in the queue for a title.

    A reservation waits as 'pending' until a copy frees up. The queue head
    then becomes 'fulfilled' and the copy is held for it until
    ``hold_until``; picking the copy up sets ``claimed_at``. Pending entries
    lapse at ``expiry_time`` and unclaimed holds at ``hold_until``, both
    becoming 'expired'.

    Attributes:
        id (str): Unique reservation identifier.
        patron_id (str): ID of patron who made the reservation.
        title_id (str): ID of reserved title.
        request_time (str): When the reservation was made.
        expiry_time (str): When a still-pending reservation lapses.
        state (str): 'pending', 'fulfilled', 'expired' or 'cancelled'.
        priority (int): Higher is served first.
        copy_id (str): Copy held for this reservation once fulfilled.
        hold_until (str): Pickup deadline of the hold.
        claimed_at (str): When the held copy was checked out.
    """

    def __init__(self, id: str, patron_id: str, title_id: str,
                 request_time: str, expiry_time: str, state: str,
                 priority: int, copy_id: Optional[str] = None,
                 hold_until: Optional[str] = None,
                 claimed_at: Optional[str] = None) -> None:
        """Initialize a Reservation instance."""
        self.id = id
        self.patron_id = patron_id
        self.title_id = title_id
        self.request_time = request_time
        self.expiry_time = expiry_time
        self.state = state
        self.priority = int(priority)
        self.copy_id = copy_id
        self.hold_until = hold_until
        self.claimed_at = claimed_at

    @property
    def is_pending(self) -> bool:
        return self.state == PENDING

    @property
    def is_open_hold(self) -> bool:
        return self.state == FULFILLED and self.claimed_at is None

    def is_hold_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.is_open_hold or not self.hold_until:
            return False
        return (now or datetime.now()) > from_db_time(self.hold_until)

    @staticmethod
    def enqueue(patron_id: str, title_id: str, priority: int = 1,
                actor_id: Optional[str] = None,
                now: Optional[datetime] = None) -> 'Reservation':
        """Put a patron in the queue for a title.

        Raises:
            ValidationError: Priority is not a non-negative integer.
            PatronNotFound / TitleNotFound: Unknown patron or title.
            DuplicateReservation: Patron already waits for, or holds a copy
                of, this title.
            TitleAvailable: A copy can be checked out right now.
        """
        from models.patron import Patron

        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 0:
            raise ValidationError('Priority must be a non-negative integer')

        now = now or datetime.now()
        reservation_id = str(uuid.uuid4())

        with transaction() as db:
            Patron.require(patron_id)
            title = Title.get_by_id(title_id)
            if not title:
                raise TitleNotFound(f'Title {title_id} not found')

            existing = db.execute('''
                SELECT id FROM reservations
                WHERE patron_id = ? AND title_id = ?
                  AND (state = 'pending' OR (state = 'fulfilled' AND claimed_at IS NULL))
            ''', (patron_id, title_id)).fetchone()
            if existing:
                raise DuplicateReservation('You already have a reservation for this title')

            if title.available_copies > 0:
                raise TitleAvailable('Title is available for immediate checkout')

            expiry = now + SystemConfig.get_days('reservation_expiry')
            db.execute('''
                INSERT INTO reservations
                (id, patron_id, title_id, request_time, expiry_time, state, priority)
                VALUES (?, ?, ?, ?, ?, 'pending', ?)
            ''', (reservation_id, patron_id, title_id, to_db_time(now),
                  to_db_time(expiry), priority))

            reservation = Reservation.get_by_id(reservation_id)
            AuditLog.record('reservation', reservation_id, 'Create',
                            reservation.to_dict(), actor_id=actor_id, timestamp=now)

        logger.info('Patron %s queued for title %s (priority %d)',
                    patron_id, title_id, priority)
        return reservation

    @staticmethod
    def get_by_id(reservation_id: str) -> Optional['Reservation']:
        """Get reservation by ID."""
        db = get_db()
        row = db.execute(
            'SELECT * FROM reservations WHERE id = ?',
            (reservation_id,)
        ).fetchone()

        if row:
            return Reservation(**dict(row))
        return None

    @staticmethod
    def get_patron_reservations(patron_id: str,
                                state: Optional[str] = None) -> List['Reservation']:
        """Get all reservations for a patron, newest first."""
        db = get_db()

        if state:
            rows = db.execute('''
                SELECT * FROM reservations
                WHERE patron_id = ? AND state = ?
                ORDER BY request_time DESC
            ''', (patron_id, state)).fetchall()
        else:
            rows = db.execute('''
                SELECT * FROM reservations
                WHERE patron_id = ?
                ORDER BY request_time DESC
            ''', (patron_id,)).fetchall()

        return [Reservation(**dict(row)) for row in rows]

    @staticmethod
    def get_queue(title_id: str) -> List['Reservation']:
        """Pending reservations for a title in service order."""
        db = get_db()
        rows = db.execute(f'''
            SELECT * FROM reservations
            WHERE title_id = ? AND state = 'pending'
            ORDER BY {QUEUE_ORDER}
        ''', (title_id,)).fetchall()
        return [Reservation(**dict(row)) for row in rows]

    @staticmethod
    def get_next_in_queue(title_id: str,
                          now: Optional[datetime] = None) -> Optional['Reservation']:
        """Get the queue head, ignoring entries already past expiry."""
        db = get_db()
        row = db.execute(f'''
            SELECT * FROM reservations
            WHERE title_id = ? AND state = 'pending' AND expiry_time > ?
            ORDER BY {QUEUE_ORDER}
            LIMIT 1
        ''', (title_id, to_db_time(now or datetime.now()))).fetchone()

        if row:
            return Reservation(**dict(row))
        return None

    @staticmethod
    def has_waiting_others(title_id: str, patron_id: str) -> bool:
        """True if someone other than ``patron_id`` is waiting for the title."""
        db = get_db()
        row = db.execute('''
            SELECT COUNT(*) AS count FROM reservations
            WHERE title_id = ? AND state = 'pending' AND patron_id != ?
        ''', (title_id, patron_id)).fetchone()
        return row['count'] > 0

    @staticmethod
    def get_active_hold(copy_id: str) -> Optional['Reservation']:
        """The unclaimed fulfilled reservation holding ``copy_id``, if any."""
        db = get_db()
        row = db.execute('''
            SELECT * FROM reservations
            WHERE copy_id = ? AND state = 'fulfilled' AND claimed_at IS NULL
        ''', (copy_id,)).fetchone()
        if row:
            return Reservation(**dict(row))
        return None

    @staticmethod
    def try_fulfill(title_id: str, copy, actor_id: Optional[str] = None,
                    now: Optional[datetime] = None) -> Optional['Reservation']:
        """Hand a freed copy to the queue head, or shelve it.

        Runs on the caller's transaction, so the copy never shows up as
        available while someone is waiting for it.

        Returns:
            The reservation now holding the copy, or None if the copy went
            back on the shelf.
        """
        from models.copy import AVAILABLE, MAINTENANCE, ON_LOAN, RESERVED, Copy

        now = now or datetime.now()
        freed_from = (ON_LOAN, MAINTENANCE, RESERVED)

        with transaction():
            head = Reservation.get_next_in_queue(title_id, now)
            if not head:
                Copy._transition(copy, freed_from, AVAILABLE, actor_id=actor_id, now=now)
                logger.info('Copy %s returned to the shelf', copy.barcode)
                return None

            head.hold(copy, actor_id=actor_id, now=now)
            Copy._transition(copy, freed_from, RESERVED, actor_id=actor_id, now=now)

        return head

    def hold(self, copy, actor_id: Optional[str] = None,
             now: Optional[datetime] = None) -> None:
        """Fulfil this pending entry by holding ``copy`` for its patron.

        The copy's own state is the caller's business; this only updates the
        reservation, on the caller's transaction.
        """
        now = now or datetime.now()
        hold_hours = SystemConfig.get_int(
            'reservation_hold_hours', SystemConfig.DEFAULT_CONFIG['reservation_hold_hours']
        )
        hold_until = to_db_time(now + timedelta(hours=hold_hours))

        db = get_db()
        cursor = db.execute('''
            UPDATE reservations
            SET state = 'fulfilled', copy_id = ?, hold_until = ?
            WHERE id = ? AND state = 'pending'
        ''', (copy.id, hold_until, self.id))
        if cursor.rowcount != 1:
            raise ReservationNotActive('Reservation is no longer pending')

        before = self.to_dict()
        self.state = FULFILLED
        self.copy_id = copy.id
        self.hold_until = hold_until
        AuditLog.record('reservation', self.id, 'Update', self.to_dict(),
                        before_state=before, actor_id=actor_id, timestamp=now)
        logger.info('Copy %s held for patron %s until %s',
                    copy.barcode, self.patron_id, self.hold_until)

    def claim(self, actor_id: Optional[str] = None,
              now: Optional[datetime] = None) -> None:
        """Record that the held copy was picked up."""
        now = now or datetime.now()
        with transaction() as db:
            cursor = db.execute('''
                UPDATE reservations SET claimed_at = ?
                WHERE id = ? AND state = 'fulfilled' AND claimed_at IS NULL
            ''', (to_db_time(now), self.id))
            if cursor.rowcount != 1:
                raise ReservationNotActive('Reservation hold is no longer active')
            before = self.to_dict()
            self.claimed_at = to_db_time(now)
            AuditLog.record('reservation', self.id, 'Update', self.to_dict(),
                            before_state=before, actor_id=actor_id, timestamp=now)

    @staticmethod
    def cancel(reservation_id: str, patron_id: str,
               actor_id: Optional[str] = None,
               now: Optional[datetime] = None) -> 'Reservation':
        """Cancel a reservation on behalf of its owner.

        A pending entry simply leaves the queue. An unclaimed hold is
        released and its copy cascades to the next waiter (or the shelf).
        Whichever of cancel and fulfilment commits first wins; the other
        sees the committed state.

        Raises:
            ReservationNotFound: Unknown reservation.
            ValidationError: The reservation belongs to someone else.
            ReservationNotActive: Already fulfilled and claimed, expired or
                cancelled.
        """
        from models.copy import Copy

        now = now or datetime.now()
        with transaction() as db:
            reservation = Reservation.get_by_id(reservation_id)
            if not reservation:
                raise ReservationNotFound(f'Reservation {reservation_id} not found')
            if reservation.patron_id != patron_id:
                raise ValidationError('Reservation belongs to another patron')
            if not (reservation.is_pending or reservation.is_open_hold):
                raise ReservationNotActive(
                    f'Only pending reservations or open holds can be cancelled '
                    f'(state: {reservation.state})'
                )

            held_copy_id = reservation.copy_id if reservation.is_open_hold else None
            reservation._set_state(CANCELLED, actor_id=actor_id, now=now)

            if held_copy_id:
                copy = Copy.get_by_id(held_copy_id)
                Reservation.try_fulfill(reservation.title_id, copy,
                                        actor_id=actor_id, now=now)

        logger.info('Reservation %s cancelled by patron %s', reservation_id, patron_id)
        return reservation

    def _set_state(self, new_state: str, actor_id: Optional[str] = None,
                   now: Optional[datetime] = None) -> None:
        db = get_db()
        before = self.to_dict()
        cursor = db.execute(
            'UPDATE reservations SET state = ? WHERE id = ? AND state = ?',
            (new_state, self.id, self.state)
        )
        if cursor.rowcount != 1:
            raise ReservationNotActive('Reservation changed concurrently')
        self.state = new_state
        AuditLog.record('reservation', self.id, 'Update', self.to_dict(),
                        before_state=before, actor_id=actor_id, timestamp=now)

    @staticmethod
    def expire_stale(now: Optional[datetime] = None,
                     actor_id: Optional[str] = None) -> int:
        """Expire lapsed pending entries and unclaimed holds.

        Each entry is expired in its own short transaction so the sweep never
        keeps the write lock for the whole queue; an entry already changed by
        someone else is skipped. A lapsed hold passes its copy to the next
        waiter. Running the sweep again finds nothing to do.

        Returns:
            Number of reservations expired.
        """
        now = now or datetime.now()
        stamp = to_db_time(now)
        db = get_db()
        candidates = [row['id'] for row in db.execute('''
            SELECT id FROM reservations
            WHERE (state = 'pending' AND expiry_time <= ?)
               OR (state = 'fulfilled' AND claimed_at IS NULL AND hold_until <= ?)
            ORDER BY request_time ASC
        ''', (stamp, stamp)).fetchall()]

        expired = 0
        for reservation_id in candidates:
            if Reservation._expire_one(reservation_id, now, actor_id):
                expired += 1

        if expired:
            logger.info('Expired %d stale reservations', expired)
        return expired

    @staticmethod
    def _expire_one(reservation_id: str, now: datetime,
                    actor_id: Optional[str]) -> bool:
        from models.copy import Copy

        stamp = to_db_time(now)
        with transaction():
            reservation = Reservation.get_by_id(reservation_id)
            if not reservation:
                return False
            lapsed_pending = reservation.is_pending and reservation.expiry_time <= stamp
            lapsed_hold = (reservation.is_open_hold and reservation.hold_until
                           and reservation.hold_until <= stamp)
            if not (lapsed_pending or lapsed_hold):
                return False

            reservation._set_state(EXPIRED, actor_id=actor_id, now=now)
            if lapsed_hold:
                copy = Copy.get_by_id(reservation.copy_id)
                Reservation.try_fulfill(reservation.title_id, copy,
                                        actor_id=actor_id, now=now)
        return True

    def get_queue_position(self) -> Optional[int]:
        """1-based position in the queue, or None when not pending."""
        if not self.is_pending:
            return None
        for position, entry in enumerate(Reservation.get_queue(self.title_id), start=1):
            if entry.id == self.id:
                return position
        return None

    def to_dict(self) -> dict:
        """Convert reservation to dictionary."""
        return {
            'id': self.id,
            'patron_id': self.patron_id,
            'title_id': self.title_id,
            'request_time': self.request_time,
            'expiry_time': self.expiry_time,
            'state': self.state,
            'priority': self.priority,
            'copy_id': self.copy_id,
            'hold_until': self.hold_until,
            'claimed_at': self.claimed_at,
        }
