"""
Fine model for late-return penalties.

``compute_fine`` is the pure penalty rule used at return time. ``Fine``
records are created at most once per loan, only for a positive amount, and
afterwards change only through payments (see models/payment.py).

Amounts are kept as integer cents in storage; the public API speaks in
two-decimal currency amounts.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional, Union
import uuid

from models.audit_log import AuditLog
from models.database import get_db, to_db_time
from models.errors import ValidationError

Amount = Union[int, float, str, Decimal]

PENDING = 'pending'
PAID = 'paid'


def to_cents(value: Amount) -> int:
    """Convert a currency amount to integer cents, rounding half up."""
    if isinstance(value, bool):
        raise ValidationError(f'Invalid amount: {value!r}')
    try:
        amount = Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError(f'Invalid amount: {value!r}')
    if not amount.is_finite():
        raise ValidationError(f'Invalid amount: {value!r}')
    return int(amount * 100)


def from_cents(cents: int) -> float:
    return round(cents / 100, 2)


def days_late(due_time: datetime, return_time: datetime) -> int:
    """Whole days between due and return time, floored, never negative."""
    if return_time <= due_time:
        return 0
    return max(0, (return_time - due_time).days)


def compute_fine(due_time: datetime, return_time: datetime, daily_rate: Amount) -> float:
    """Penalty for returning at ``return_time`` a loan due at ``due_time``.

    Only whole days count, so anything under 24 hours late is free.
    """
    return from_cents(days_late(due_time, return_time) * to_cents(daily_rate))


class Fine:
    """Represents a penalty owed for one loan.

    Attributes:
        id (str): Unique fine identifier.
        loan_id (str): Loan that produced the fine (one fine per loan).
        patron_id (str): Patron who owes it.
        amount_cents (int): Fine amount in cents.
        reason (str): Why the fine was charged.
        state (str): 'pending' or 'paid'.
        generated_at (str): When the fine was created.
        paid_at (str): When the last payment settled it (optional).
    """

    def __init__(self, id: str, loan_id: str, patron_id: str,
                 amount_cents: int, reason: str, state: str,
                 generated_at: str, paid_at: Optional[str] = None) -> None:
        self.id = id
        self.loan_id = loan_id
        self.patron_id = patron_id
        self.amount_cents = int(amount_cents)
        self.reason = reason
        self.state = state
        self.generated_at = generated_at
        self.paid_at = paid_at

    @property
    def amount(self) -> float:
        return from_cents(self.amount_cents)

    @property
    def is_paid(self) -> bool:
        return self.state == PAID

    @staticmethod
    def create_pending(loan_id: str, patron_id: str, amount_cents: int,
                       reason: str, actor_id: Optional[str] = None,
                       now: Optional[datetime] = None) -> 'Fine':
        """Insert a pending fine on the caller's transaction.

        The unique index on ``loan_id`` rejects a second fine for a loan.
        """
        db = get_db()
        fine_id = str(uuid.uuid4())
        db.execute('''
            INSERT INTO fines
            (id, loan_id, patron_id, amount_cents, reason, state, generated_at, paid_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?, NULL)
        ''', (fine_id, loan_id, patron_id, amount_cents, reason,
              to_db_time(now or datetime.now())))

        fine = Fine.get_by_id(fine_id)
        AuditLog.record('fine', fine_id, 'Create', fine.to_dict(),
                        actor_id=actor_id, timestamp=now)
        return fine

    @staticmethod
    def get_by_id(fine_id: str) -> Optional['Fine']:
        """Get fine by ID."""
        db = get_db()
        row = db.execute('SELECT * FROM fines WHERE id = ?', (fine_id,)).fetchone()

        if row:
            return Fine(**dict(row))
        return None

    @staticmethod
    def get_by_loan(loan_id: str) -> Optional['Fine']:
        db = get_db()
        row = db.execute('SELECT * FROM fines WHERE loan_id = ?', (loan_id,)).fetchone()
        if row:
            return Fine(**dict(row))
        return None

    @staticmethod
    def get_patron_fines(patron_id: str,
                         state: Optional[str] = None) -> List['Fine']:
        """Get all fines for a patron.

        Args:
            patron_id: Patron ID.
            state: Filter by state (optional).

        Returns:
            List of Fine objects, newest first.
        """
        db = get_db()

        if state:
            rows = db.execute('''
                SELECT * FROM fines
                WHERE patron_id = ? AND state = ?
                ORDER BY generated_at DESC
            ''', (patron_id, state)).fetchall()
        else:
            rows = db.execute('''
                SELECT * FROM fines
                WHERE patron_id = ?
                ORDER BY generated_at DESC
            ''', (patron_id,)).fetchall()

        return [Fine(**dict(row)) for row in rows]

    def paid_cents(self) -> int:
        """Sum of all payments recorded against this fine."""
        db = get_db()
        row = db.execute(
            'SELECT COALESCE(SUM(amount_cents), 0) AS total FROM payments WHERE fine_id = ?',
            (self.id,)
        ).fetchone()
        return int(row['total'])

    def remaining_cents(self) -> int:
        return self.amount_cents - self.paid_cents()

    @property
    def remaining(self) -> float:
        return from_cents(self.remaining_cents())

    def to_dict(self) -> dict:
        """Convert fine to dictionary."""
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'patron_id': self.patron_id,
            'amount': self.amount,
            'remaining': self.remaining,
            'reason': self.reason,
            'state': self.state,
            'generated_at': self.generated_at,
            'paid_at': self.paid_at,
        }
