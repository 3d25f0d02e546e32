import threading
from datetime import timedelta

from conftest import LOAN_PERIOD, NOW, assert_ledger_consistent
from models.database import close_db
from models.errors import AlreadyFinalized, CirculationError, CopyUnavailable, OverPayment
from models.fine import Fine
from models.loan import Loan
from models.payment import Payment

WORKERS = 8


def run_concurrently(target, args_list):
    """Start one thread per args tuple at the same moment; collect outcomes."""
    barrier = threading.Barrier(len(args_list))
    results = []
    lock = threading.Lock()

    def worker(*args):
        try:
            barrier.wait()
            outcome = target(*args)
        except CirculationError as e:
            outcome = e
        finally:
            close_db()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=args) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results


def test_parallel_checkouts_of_one_copy(db, copy, make_patron):
    patrons = [make_patron() for _ in range(WORKERS)]

    results = run_concurrently(
        lambda patron_id: Loan.checkout(patron_id, copy.id, LOAN_PERIOD, now=NOW),
        [(p.id,) for p in patrons]
    )

    loans = [r for r in results if isinstance(r, Loan)]
    failures = [r for r in results if isinstance(r, CopyUnavailable)]
    assert len(loans) == 1
    assert len(failures) == WORKERS - 1
    assert_ledger_consistent(db)


def test_parallel_returns_create_one_fine(db, copy, patron):
    loan = Loan.checkout(patron.id, copy.id, LOAN_PERIOD, now=NOW)
    late = NOW + LOAN_PERIOD + timedelta(days=2)

    results = run_concurrently(
        lambda: Loan.return_copy(loan.id, late),
        [() for _ in range(4)]
    )

    assert len([r for r in results if isinstance(r, Loan)]) == 1
    assert len([r for r in results if isinstance(r, AlreadyFinalized)]) == 3
    assert Fine.get_by_loan(loan.id).amount == 100.0
    assert_ledger_consistent(db)


def test_parallel_payments_never_exceed_fine(late_fine):
    results = run_concurrently(
        lambda: Payment.apply_payment(late_fine.id, 50, 'cash', now=NOW),
        [() for _ in range(5)]
    )

    assert len([r for r in results if isinstance(r, Payment)]) == 3
    assert len([r for r in results if isinstance(r, OverPayment)]) == 2

    fine = Fine.get_by_id(late_fine.id)
    assert fine.is_paid
    assert fine.remaining_cents() == 0
