"""Loan workflow.

A loan is created at checkout as 'active', becomes overdue once its due
time passes (derived on read, and stored by the overdue sweep) and ends as
'finalized' when the copy comes back. Checkout and return each run as one
transaction spanning the patron checks, the copy ledger, the fine and the
reservation queue; if any step fails nothing is written.
"""
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from models.audit_log import AuditLog
from models.copy import Copy
from models.database import from_db_time, get_db, to_db_time, transaction
from models.errors import (AlreadyFinalized, CopyUnavailable, LimitExceeded,
                           LoanNotFound, PatronBlocked, PatronInactive,
                           RenewalDenied, ValidationError)
from models.fine import Fine, compute_fine, days_late, to_cents
from models.patron import Patron
from models.reservation import Reservation
from models.sanction import SanctionPolicy
from models.system_config import SystemConfig

logger = logging.getLogger(__name__)

ACTIVE = 'active'
OVERDUE = 'overdue'
FINALIZED = 'finalized'

OPEN_STATES = (ACTIVE, OVERDUE)


class Loan:
    """Represents a copy held by a patron for a bounded period.

    Attributes:
        id (str): Unique loan identifier.
        patron_id (str): Borrowing patron.
        copy_id (str): Borrowed copy.
        start_time (str): Checkout time.
        due_time (str): When the copy is due back.
        return_time (str): When it came back (set only once finalized).
        state (str): 'active', 'overdue' or 'finalized'.
        renewal_count (int): Renewals granted so far.
    """

    def __init__(self, id: str, patron_id: str, copy_id: str, start_time: str,
                 due_time: str, return_time: Optional[str], state: str,
                 renewal_count: int) -> None:
        self.id = id
        self.patron_id = patron_id
        self.copy_id = copy_id
        self.start_time = start_time
        self.due_time = due_time
        self.return_time = return_time
        self.state = state
        self.renewal_count = int(renewal_count)

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    @property
    def is_finalized(self) -> bool:
        return self.state == FINALIZED

    def state_at(self, now: Optional[datetime] = None) -> str:
        """Effective state at ``now``; overdue is derived from the due time."""
        if self.is_finalized:
            return FINALIZED
        if (now or datetime.now()) > from_db_time(self.due_time):
            return OVERDUE
        return ACTIVE

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        return self.state_at(now) == OVERDUE

    def get_overdue_days(self, now: Optional[datetime] = None) -> int:
        if self.is_finalized:
            return days_late(from_db_time(self.due_time), from_db_time(self.return_time))
        return days_late(from_db_time(self.due_time), now or datetime.now())

    # ==================== WORKFLOW ====================

    @staticmethod
    def checkout(patron_id: str, copy_id: str,
                 loan_period: Optional[timedelta] = None,
                 actor_id: Optional[str] = None,
                 now: Optional[datetime] = None) -> 'Loan':
        """Lend a copy to a patron.

        Args:
            patron_id: Borrowing patron.
            copy_id: Copy to lend.
            loan_period: Loan length. Defaults to the patron's role setting
                ``loan_period_days`` or the configured default.

        Raises:
            PatronNotFound: Unknown patron.
            PatronInactive: Patron is not active.
            PatronBlocked: An active sanction covers ``now``.
            LimitExceeded: Unpaid fines at or above the threshold, or too
                many open loans.
            CopyNotFound / CopyUnavailable: Copy is unknown or not lendable.
            ValidationError: Loan period not positive or above the configured
                maximum, or a malformed role setting.
        """
        if loan_period is not None and loan_period <= timedelta(0):
            raise ValidationError('Loan period must be positive')

        now = now or datetime.now()
        loan_id = str(uuid.uuid4())

        with transaction() as db:
            patron = Patron.require(patron_id)
            if not Patron.get_status(patron_id)['active']:
                raise PatronInactive(f'Patron {patron.name} is not active')

            if SanctionPolicy.is_blocked(patron_id, now):
                raise PatronBlocked(f'Patron {patron.name} has an active sanction')

            threshold = to_cents(SystemConfig.get_float(
                'block_threshold_unpaid_fines',
                SystemConfig.DEFAULT_CONFIG['block_threshold_unpaid_fines']
            ))
            balance = SanctionPolicy.outstanding_balance_cents(patron_id)
            if balance > 0 and balance >= threshold:
                raise LimitExceeded(
                    f'Outstanding fines of {balance / 100:.2f} must be paid before borrowing'
                )

            max_loans = patron.capability('max_active_loans', SystemConfig.get_int(
                'max_active_loans', SystemConfig.DEFAULT_CONFIG['max_active_loans']
            ))
            if Loan.count_open(patron_id) >= max_loans:
                raise LimitExceeded(f'Maximum of {max_loans} open loans reached')

            if loan_period is None:
                days = patron.capability('loan_period_days', SystemConfig.get_int(
                    'loan_period_default', SystemConfig.DEFAULT_CONFIG['loan_period_default']
                ))
                loan_period = timedelta(days=days)
            max_period = SystemConfig.get_days('max_loan_period_days')
            if loan_period > max_period:
                raise ValidationError(
                    f'Loan period cannot exceed {max_period.days} days'
                )
            try:
                due_time = now + loan_period
            except OverflowError:
                raise ValidationError('Loan period is out of range')

            Copy.checkout(copy_id, patron_id, actor_id=actor_id, now=now)

            try:
                db.execute('''
                    INSERT INTO loans
                    (id, patron_id, copy_id, start_time, due_time, return_time,
                     state, renewal_count)
                    VALUES (?, ?, ?, ?, ?, NULL, 'active', 0)
                ''', (loan_id, patron_id, copy_id, to_db_time(now),
                      to_db_time(due_time)))
            except sqlite3.IntegrityError as e:
                raise CopyUnavailable(f'Copy {copy_id} already has an open loan') from e

            loan = Loan.get_by_id(loan_id)
            AuditLog.record('loan', loan_id, 'Create', loan.to_dict(now),
                            actor_id=actor_id, timestamp=now)

        logger.info('Loan %s: copy %s to patron %s, due %s',
                    loan_id, copy_id, patron_id, loan.due_time)
        return loan

    @staticmethod
    def renew(loan_id: str, actor_id: Optional[str] = None,
              now: Optional[datetime] = None) -> 'Loan':
        """Extend an active loan's due time.

        Raises:
            LoanNotFound: Unknown loan.
            RenewalDenied: Loan not active or already overdue, renewal limit
                reached, or another patron is waiting for the title.
        """
        now = now or datetime.now()

        with transaction() as db:
            loan = Loan.get_by_id(loan_id)
            if not loan:
                raise LoanNotFound(f'Loan {loan_id} not found')
            if loan.is_finalized:
                raise RenewalDenied('Finalized loans cannot be renewed')
            if loan.state == OVERDUE or loan.is_overdue(now):
                raise RenewalDenied('Overdue loans cannot be renewed')

            limit = SystemConfig.get_int('max_renewals', SystemConfig.DEFAULT_CONFIG['max_renewals'])
            if loan.renewal_count >= limit:
                raise RenewalDenied(f'Maximum renewal limit ({limit} times) reached')

            copy = Copy.get_by_id(loan.copy_id)
            if Reservation.has_waiting_others(copy.title_id, loan.patron_id):
                raise RenewalDenied('Cannot renew: another patron has reserved this title')

            before = loan.to_dict(now)
            new_due = from_db_time(loan.due_time) + SystemConfig.get_days('renewal_extension')
            cursor = db.execute('''
                UPDATE loans SET due_time = ?, renewal_count = renewal_count + 1
                WHERE id = ? AND state = 'active' AND renewal_count = ?
            ''', (to_db_time(new_due), loan.id, loan.renewal_count))
            if cursor.rowcount != 1:
                raise RenewalDenied('Loan changed while renewing, try again')

            loan.due_time = to_db_time(new_due)
            loan.renewal_count += 1
            AuditLog.record('loan', loan.id, 'Update', loan.to_dict(now),
                            before_state=before, actor_id=actor_id, timestamp=now)

        logger.info('Loan %s renewed, new due time %s', loan.id, loan.due_time)
        return loan

    @staticmethod
    def return_copy(loan_id: str, return_time: Optional[datetime] = None,
                    actor_id: Optional[str] = None,
                    now: Optional[datetime] = None) -> 'Loan':
        """Close a loan, charge any late fine and put the copy back.

        In one transaction: the loan is finalized, the penalty computed, a
        pending fine created when it is positive, the copy released and the
        reservation queue served.

        Raises:
            LoanNotFound: Unknown loan.
            AlreadyFinalized: The loan was already returned. A repeated
                return never creates a second fine.
            ValidationError: ``return_time`` precedes the checkout.
        """
        now = now or return_time or datetime.now()
        return_time = return_time or now

        with transaction() as db:
            loan = Loan.get_by_id(loan_id)
            if not loan:
                raise LoanNotFound(f'Loan {loan_id} not found')
            if loan.is_finalized:
                raise AlreadyFinalized(f'Loan {loan_id} was already returned')
            if return_time < from_db_time(loan.start_time):
                raise ValidationError('Return time cannot precede checkout time')

            before = loan.to_dict(now)
            cursor = db.execute('''
                UPDATE loans SET state = 'finalized', return_time = ?
                WHERE id = ? AND state IN ('active', 'overdue')
            ''', (to_db_time(return_time), loan.id))
            if cursor.rowcount != 1:
                raise AlreadyFinalized(f'Loan {loan_id} was already returned')
            loan.state = FINALIZED
            loan.return_time = to_db_time(return_time)
            AuditLog.record('loan', loan.id, 'Update', loan.to_dict(now),
                            before_state=before, actor_id=actor_id, timestamp=now)

            rate = SystemConfig.get_float(
                'daily_fine_rate', SystemConfig.DEFAULT_CONFIG['daily_fine_rate']
            )
            due = from_db_time(loan.due_time)
            amount_cents = to_cents(compute_fine(due, return_time, rate))
            if amount_cents > 0:
                late = days_late(due, return_time)
                Fine.create_pending(
                    loan.id, loan.patron_id, amount_cents,
                    f'Late return: {late} day(s) at {rate:.2f}/day',
                    actor_id=actor_id, now=now
                )

            Copy.release(loan.copy_id, actor_id=actor_id, now=now)

        logger.info('Loan %s returned at %s', loan.id, loan.return_time)
        return loan

    @staticmethod
    def mark_overdue(now: Optional[datetime] = None,
                     actor_id: Optional[str] = None) -> int:
        """Store the overdue state on active loans past their due time.

        Returns:
            Number of loans marked; a second run returns 0.
        """
        now = now or datetime.now()
        stamp = to_db_time(now)

        with transaction() as db:
            rows = db.execute('''
                SELECT * FROM loans WHERE state = 'active' AND due_time < ?
            ''', (stamp,)).fetchall()
            for row in rows:
                loan = Loan(**dict(row))
                before = loan.to_dict(now)
                db.execute(
                    "UPDATE loans SET state = 'overdue' WHERE id = ? AND state = 'active'",
                    (loan.id,)
                )
                loan.state = OVERDUE
                AuditLog.record('loan', loan.id, 'Update', loan.to_dict(now),
                                before_state=before, actor_id=actor_id, timestamp=now)

        if rows:
            logger.info('Marked %d loans overdue', len(rows))
        return len(rows)

    # ==================== QUERIES ====================

    @staticmethod
    def get_by_id(loan_id: str) -> Optional['Loan']:
        db = get_db()
        row = db.execute('SELECT * FROM loans WHERE id = ?', (loan_id,)).fetchone()
        if row:
            return Loan(**dict(row))
        return None

    @staticmethod
    def get_patron_loans(patron_id: str, state: Optional[str] = None) -> List['Loan']:
        db = get_db()
        if state:
            rows = db.execute(
                'SELECT * FROM loans WHERE patron_id = ? AND state = ? ORDER BY start_time DESC',
                (patron_id, state)
            ).fetchall()
        else:
            rows = db.execute(
                'SELECT * FROM loans WHERE patron_id = ? ORDER BY start_time DESC',
                (patron_id,)
            ).fetchall()
        return [Loan(**dict(row)) for row in rows]

    @staticmethod
    def get_open_loan_for_copy(copy_id: str) -> Optional['Loan']:
        db = get_db()
        row = db.execute(
            "SELECT * FROM loans WHERE copy_id = ? AND state IN ('active', 'overdue')",
            (copy_id,)
        ).fetchone()
        if row:
            return Loan(**dict(row))
        return None

    @staticmethod
    def get_overdue_loans(now: Optional[datetime] = None) -> List['Loan']:
        db = get_db()
        rows = db.execute('''
            SELECT * FROM loans
            WHERE state IN ('active', 'overdue') AND due_time < ?
            ORDER BY due_time ASC
        ''', (to_db_time(now or datetime.now()),)).fetchall()
        return [Loan(**dict(row)) for row in rows]

    @staticmethod
    def count_open(patron_id: str) -> int:
        db = get_db()
        row = db.execute(
            "SELECT COUNT(*) AS count FROM loans WHERE patron_id = ? AND state IN ('active', 'overdue')",
            (patron_id,)
        ).fetchone()
        return row['count']

    def get_fine(self) -> Optional[Fine]:
        return Fine.get_by_loan(self.id)

    def get_copy(self) -> Optional[Copy]:
        return Copy.get_by_id(self.copy_id)

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            'id': self.id,
            'patron_id': self.patron_id,
            'copy_id': self.copy_id,
            'start_time': self.start_time,
            'due_time': self.due_time,
            'return_time': self.return_time,
            'state': self.state_at(now),
            'stored_state': self.state,
            'renewal_count': self.renewal_count,
            'overdue_days': self.get_overdue_days(now),
        }
