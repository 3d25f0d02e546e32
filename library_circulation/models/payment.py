"""Payment ledger.

Payments settle fines, possibly in several instalments. The outstanding
balance of a fine is always derived as the fine amount minus the sum of its
payments; it is never stored. A fine flips to 'paid' in the same transaction
as the payment that brings its balance to zero.
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from config.config import Config
from models.audit_log import AuditLog
from models.database import get_db, to_db_time, transaction
from models.errors import FineNotFound, OverPayment, ValidationError
from models.fine import PAID, Amount, Fine, from_cents, to_cents

logger = logging.getLogger(__name__)


class Payment:
    """Represents one payment against a fine.

    Attributes:
        id (str): Unique payment identifier.
        fine_id (str): Fine being settled.
        amount_cents (int): Amount paid in cents.
        method (str): Payment method (see Config.PAYMENT_METHODS).
        paid_at (str): When the payment was recorded.
        receipt (str): External receipt reference (optional).
    """

    def __init__(self, id: str, fine_id: str, amount_cents: int, method: str,
                 paid_at: str, receipt: Optional[str] = None) -> None:
        self.id = id
        self.fine_id = fine_id
        self.amount_cents = int(amount_cents)
        self.method = method
        self.paid_at = paid_at
        self.receipt = receipt

    @property
    def amount(self) -> float:
        return from_cents(self.amount_cents)

    @staticmethod
    def apply_payment(fine_id: str, amount: Amount, method: str,
                      receipt: Optional[str] = None,
                      actor_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> 'Payment':
        """Record a payment against a fine.

        The remaining balance is read and the payment written under the same
        write lock, so two concurrent payments can never both fit into a
        balance that only has room for one.

        Raises:
            ValidationError: Non-positive or malformed amount, unknown method.
            FineNotFound: Unknown fine.
            OverPayment: Amount exceeds the remaining balance (this includes
                any payment on a fine that is already paid).
        """
        amount_cents = to_cents(amount)
        if amount_cents <= 0:
            raise ValidationError('Payment amount must be positive')
        method = (method or '').strip().lower()
        if method not in Config.PAYMENT_METHODS:
            raise ValidationError(
                f'Unknown payment method {method!r}; expected one of '
                f'{", ".join(Config.PAYMENT_METHODS)}'
            )

        now = now or datetime.now()
        payment_id = str(uuid.uuid4())

        with transaction() as db:
            fine = Fine.get_by_id(fine_id)
            if not fine:
                raise FineNotFound(f'Fine {fine_id} not found')

            remaining = fine.remaining_cents()
            if amount_cents > remaining:
                raise OverPayment(
                    f'Payment of {from_cents(amount_cents):.2f} exceeds the remaining '
                    f'balance of {from_cents(remaining):.2f}'
                )

            db.execute('''
                INSERT INTO payments (id, fine_id, amount_cents, method, paid_at, receipt)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (payment_id, fine_id, amount_cents, method, to_db_time(now), receipt))
            payment = Payment.get_by_id(payment_id)
            AuditLog.record('payment', payment_id, 'Create', payment.to_dict(),
                            actor_id=actor_id, timestamp=now)

            if remaining - amount_cents == 0:
                before = fine.to_dict()
                db.execute(
                    "UPDATE fines SET state = 'paid', paid_at = ? WHERE id = ?",
                    (to_db_time(now), fine_id)
                )
                fine.state = PAID
                fine.paid_at = to_db_time(now)
                AuditLog.record('fine', fine_id, 'Update', fine.to_dict(),
                                before_state=before, actor_id=actor_id, timestamp=now)

        logger.info('Payment of %.2f recorded on fine %s (%s)',
                    payment.amount, fine_id, method)
        return payment

    @staticmethod
    def get_by_id(payment_id: str) -> Optional['Payment']:
        db = get_db()
        row = db.execute('SELECT * FROM payments WHERE id = ?', (payment_id,)).fetchone()
        if row:
            return Payment(**dict(row))
        return None

    @staticmethod
    def get_for_fine(fine_id: str) -> List['Payment']:
        db = get_db()
        rows = db.execute(
            'SELECT * FROM payments WHERE fine_id = ? ORDER BY paid_at ASC, rowid ASC',
            (fine_id,)
        ).fetchall()
        return [Payment(**dict(row)) for row in rows]

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'fine_id': self.fine_id,
            'amount': self.amount,
            'method': self.method,
            'paid_at': self.paid_at,
            'receipt': self.receipt,
        }
