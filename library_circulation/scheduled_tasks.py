"""Background sweeps.

A single daemon thread wakes up every ``SWEEP_INTERVAL_SECONDS`` and, inside
an application context:

    1. expires lapsed reservations and unclaimed holds,
    2. stores the overdue state on loans past due,
    3. delivers pending audit events to the configured sink.

Each step is idempotent and works in short transactions, so the sweep can
overlap foreground checkouts and returns and can be re-run at any time.
"""
import logging
import threading
from typing import Dict, Optional

from models.audit_log import AuditLog, logging_sink
from models.loan import Loan
from models.reservation import Reservation

logger = logging.getLogger(__name__)

_scheduler_thread: Optional[threading.Thread] = None
_stop_event = threading.Event()


def run_sweeps(app) -> Dict[str, int]:
    """Run every sweep once and report what each did."""
    sink = app.config.get('AUDIT_SINK') or logging_sink
    with app.app_context():
        expired = Reservation.expire_stale(actor_id='scheduler')
        overdue = Loan.mark_overdue(actor_id='scheduler')
        dispatched = AuditLog.dispatch_pending(sink)

    return {
        'reservations_expired': expired,
        'loans_marked_overdue': overdue,
        'audit_events_dispatched': dispatched,
    }


def _sweep_loop(app, interval: float) -> None:
    while not _stop_event.wait(interval):
        try:
            results = run_sweeps(app)
        except Exception:
            logger.exception('Background sweep failed; retrying next interval')
            continue
        if any(results.values()):
            logger.info('Background sweep: %s', results)


def start_scheduler(app) -> None:
    """Start the sweep thread once per process."""
    global _scheduler_thread

    if not app.config.get('SCHEDULER_ENABLED', True):
        logger.info('Background sweeps disabled')
        return
    if _scheduler_thread is not None and _scheduler_thread.is_alive():
        return

    interval = float(app.config.get('SWEEP_INTERVAL_SECONDS', 300))
    _stop_event.clear()
    _scheduler_thread = threading.Thread(
        target=_sweep_loop, args=(app, interval),
        name='circulation-sweeps', daemon=True
    )
    _scheduler_thread.start()
    logger.info('Background sweeps every %.0f seconds', interval)


def shutdown_scheduler() -> None:
    """Stop the sweep thread and wait briefly for it to exit."""
    global _scheduler_thread

    _stop_event.set()
    if _scheduler_thread is not None:
        _scheduler_thread.join(timeout=5)
        _scheduler_thread = None
