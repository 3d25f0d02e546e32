"""
Models package

Circulation ledgers, leaf to root:
    Title / Copy   - copy ledger and per-title availability (title.py, copy.py)
    Loan           - loan workflow, the orchestrator (loan.py)
    Reservation    - priority/FIFO reservation queue (reservation.py)
    compute_fine   - pure penalty rule, Fine records (fine.py)
    Payment        - payment ledger (payment.py)
    SanctionPolicy - borrowing eligibility (sanction.py)
    AuditLog       - audit outbox (audit_log.py)
"""
from models.database import init_db, get_db, close_db, transaction
from models.errors import CirculationError
from models.title import Title
from models.copy import Copy
from models.patron import Patron
from models.loan import Loan
from models.reservation import Reservation
from models.fine import Fine, compute_fine
from models.payment import Payment
from models.sanction import Sanction, SanctionPolicy
from models.audit_log import AuditLog, logging_sink
from models.system_config import SystemConfig

__all__ = [
    'init_db', 'get_db', 'close_db', 'transaction',
    'CirculationError',
    'Title', 'Copy', 'Patron', 'Loan', 'Reservation',
    'Fine', 'compute_fine', 'Payment', 'Sanction', 'SanctionPolicy',
    'AuditLog', 'logging_sink', 'SystemConfig',
]
