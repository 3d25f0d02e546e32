from datetime import timedelta

import pytest

from conftest import LOAN_PERIOD, NOW, assert_ledger_consistent
from models.audit_log import AuditLog
from models.copy import AVAILABLE, ON_LOAN, RESERVED, Copy
from models.errors import (CopyUnavailable, DuplicateReservation,
                           PatronNotFound, ReservationNotActive,
                           ReservationNotFound, TitleAvailable, TitleNotFound,
                           ValidationError)
from models.loan import Loan
from models.reservation import CANCELLED, EXPIRED, FULFILLED, PENDING, Reservation
from models.title import Title


@pytest.fixture
def lent_copy(copy, make_patron):
    """The title's only copy, on loan to a fresh patron."""
    loan = Loan.checkout(make_patron().id, copy.id, LOAN_PERIOD, now=NOW)
    return copy, loan


def test_higher_priority_is_served_first(db, lent_copy, make_patron):
    copy, loan = lent_copy
    a, b = make_patron('A'), make_patron('B')

    res_a = Reservation.enqueue(a.id, copy.title_id, priority=1, now=NOW + timedelta(minutes=10))
    res_b = Reservation.enqueue(b.id, copy.title_id, priority=2, now=NOW + timedelta(minutes=11))
    assert [r.id for r in Reservation.get_queue(copy.title_id)] == [res_b.id, res_a.id]

    Loan.return_copy(loan.id, NOW + timedelta(days=1))

    assert Reservation.get_by_id(res_b.id).state == FULFILLED
    assert Reservation.get_by_id(res_a.id).state == PENDING
    assert Reservation.get_by_id(res_a.id).get_queue_position() == 1
    assert Copy.get_by_id(copy.id).state == RESERVED
    assert_ledger_consistent(db)


def test_equal_priority_is_first_come_first_served(lent_copy, make_patron):
    copy, loan = lent_copy
    early, late = make_patron(), make_patron()

    first = Reservation.enqueue(early.id, copy.title_id, now=NOW + timedelta(hours=1))
    second = Reservation.enqueue(late.id, copy.title_id, now=NOW + timedelta(hours=2))
    assert first.get_queue_position() == 1
    assert second.get_queue_position() == 2

    Loan.return_copy(loan.id, NOW + timedelta(days=1))
    assert Reservation.get_by_id(first.id).state == FULFILLED


def test_duplicate_reservation(lent_copy, patron):
    copy, _ = lent_copy
    Reservation.enqueue(patron.id, copy.title_id, now=NOW)
    with pytest.raises(DuplicateReservation):
        Reservation.enqueue(patron.id, copy.title_id, now=NOW)


def test_available_title_cannot_be_reserved(copy, patron):
    with pytest.raises(TitleAvailable):
        Reservation.enqueue(patron.id, copy.title_id, now=NOW)


def test_enqueue_unknown_title_or_patron(db, patron, title):
    with pytest.raises(TitleNotFound):
        Reservation.enqueue(patron.id, 'missing', now=NOW)
    with pytest.raises(PatronNotFound):
        Reservation.enqueue('nobody', title.id, now=NOW)


@pytest.mark.parametrize('priority', [-1, True, '2', 1.5])
def test_enqueue_rejects_bad_priority(lent_copy, patron, priority):
    copy, _ = lent_copy
    with pytest.raises(ValidationError):
        Reservation.enqueue(patron.id, copy.title_id, priority=priority, now=NOW)


def test_expiry_time_follows_configuration(lent_copy, patron):
    copy, _ = lent_copy
    reservation = Reservation.enqueue(patron.id, copy.title_id, now=NOW)
    assert reservation.expiry_time == '2024-03-31 12:00:00'


def test_hold_is_claimed_at_checkout(db, lent_copy, make_patron):
    copy, loan = lent_copy
    waiter = make_patron()
    reservation = Reservation.enqueue(waiter.id, copy.title_id, now=NOW)
    Loan.return_copy(loan.id, NOW + timedelta(days=1))

    Loan.checkout(waiter.id, copy.id, now=NOW + timedelta(days=1, hours=3))

    claimed = Reservation.get_by_id(reservation.id)
    assert claimed.state == FULFILLED
    assert claimed.claimed_at == '2024-03-02 15:00:00'
    assert not claimed.is_open_hold
    assert Copy.get_by_id(copy.id).state == ON_LOAN
    assert_ledger_consistent(db)


def test_lapsed_hold_cannot_be_claimed(lent_copy, make_patron):
    copy, loan = lent_copy
    waiter = make_patron()
    Reservation.enqueue(waiter.id, copy.title_id, now=NOW)
    Loan.return_copy(loan.id, NOW + timedelta(days=1))

    with pytest.raises(CopyUnavailable):
        Loan.checkout(waiter.id, copy.id, now=NOW + timedelta(days=4))


def test_expire_stale_passes_lapsed_hold_to_next_waiter(db, lent_copy, make_patron):
    copy, loan = lent_copy
    first, second = make_patron(), make_patron()
    res_first = Reservation.enqueue(first.id, copy.title_id, now=NOW)
    res_second = Reservation.enqueue(second.id, copy.title_id, now=NOW + timedelta(minutes=1))
    Loan.return_copy(loan.id, NOW + timedelta(days=1))

    sweep_time = NOW + timedelta(days=4)
    assert Reservation.expire_stale(now=sweep_time) == 1
    assert Reservation.expire_stale(now=sweep_time) == 0

    assert Reservation.get_by_id(res_first.id).state == EXPIRED
    handed_on = Reservation.get_by_id(res_second.id)
    assert handed_on.state == FULFILLED
    assert handed_on.copy_id == copy.id
    assert Copy.get_by_id(copy.id).state == RESERVED
    assert_ledger_consistent(db)


def test_expire_stale_shelves_copy_when_queue_is_empty(db, lent_copy, patron):
    copy, loan = lent_copy
    Reservation.enqueue(patron.id, copy.title_id, now=NOW)
    Loan.return_copy(loan.id, NOW + timedelta(days=1))

    Reservation.expire_stale(now=NOW + timedelta(days=4))

    assert Copy.get_by_id(copy.id).state == AVAILABLE
    assert_ledger_consistent(db)


def test_expire_stale_expires_old_pending_entries(lent_copy, patron):
    copy, _ = lent_copy
    reservation = Reservation.enqueue(patron.id, copy.title_id, now=NOW)

    assert Reservation.expire_stale(now=NOW + timedelta(days=29)) == 0
    assert Reservation.expire_stale(now=NOW + timedelta(days=31)) == 1
    assert Reservation.get_by_id(reservation.id).state == EXPIRED
    assert Reservation.get_queue(copy.title_id) == []


def test_expired_pending_entry_is_skipped_by_fulfilment(lent_copy, make_patron):
    copy, loan = lent_copy
    stale, fresh = make_patron(), make_patron()
    res_stale = Reservation.enqueue(stale.id, copy.title_id, priority=5, now=NOW)
    res_fresh = Reservation.enqueue(fresh.id, copy.title_id, now=NOW + timedelta(days=20))

    Loan.return_copy(loan.id, NOW + timedelta(days=31))

    assert Reservation.get_by_id(res_stale.id).state == PENDING
    assert Reservation.get_by_id(res_fresh.id).state == FULFILLED


def test_cancel_pending_reservation(lent_copy, make_patron):
    copy, _ = lent_copy
    first, second = make_patron(), make_patron()
    res_first = Reservation.enqueue(first.id, copy.title_id, now=NOW)
    res_second = Reservation.enqueue(second.id, copy.title_id, now=NOW + timedelta(minutes=1))

    cancelled = Reservation.cancel(res_first.id, first.id, now=NOW)

    assert cancelled.state == CANCELLED
    assert Reservation.get_by_id(res_second.id).get_queue_position() == 1

    with pytest.raises(ReservationNotActive):
        Reservation.cancel(res_first.id, first.id, now=NOW)


def test_only_owner_can_cancel(lent_copy, make_patron):
    copy, _ = lent_copy
    owner, stranger = make_patron(), make_patron()
    reservation = Reservation.enqueue(owner.id, copy.title_id, now=NOW)

    with pytest.raises(ValidationError):
        Reservation.cancel(reservation.id, stranger.id, now=NOW)
    assert Reservation.get_by_id(reservation.id).state == PENDING


def test_cancel_unknown_reservation(db):
    with pytest.raises(ReservationNotFound):
        Reservation.cancel('missing', 'anyone', now=NOW)


def test_cancelling_open_hold_cascades(db, lent_copy, make_patron):
    copy, loan = lent_copy
    first, second = make_patron(), make_patron()
    res_first = Reservation.enqueue(first.id, copy.title_id, now=NOW)
    res_second = Reservation.enqueue(second.id, copy.title_id, now=NOW + timedelta(minutes=1))
    Loan.return_copy(loan.id, NOW + timedelta(days=1))

    Reservation.cancel(res_first.id, first.id, now=NOW + timedelta(days=1, hours=1))

    assert Reservation.get_by_id(res_first.id).state == CANCELLED
    assert Reservation.get_by_id(res_second.id).state == FULFILLED
    assert Copy.get_by_id(copy.id).state == RESERVED
    assert_ledger_consistent(db)


def test_copy_back_from_maintenance_serves_queue(db, make_title, make_patron):
    title = make_title('Kindred', copies=1)
    copy = Copy.get_for_title(title.id)[0]
    Copy.send_to_maintenance(copy.id, now=NOW)
    waiter = make_patron()
    reservation = Reservation.enqueue(waiter.id, title.id, now=NOW)

    held = Copy.return_from_maintenance(copy.id, now=NOW + timedelta(days=2))

    assert held.id == reservation.id
    assert Copy.get_by_id(copy.id).state == RESERVED
    assert_ledger_consistent(db)


def test_new_copy_goes_to_queue_head(db, lent_copy, make_patron):
    copy, _ = lent_copy
    waiter = make_patron()
    reservation = Reservation.enqueue(waiter.id, copy.title_id, now=NOW)

    new_copy = Copy.acquire(copy.title_id, 'NEW-1', now=NOW + timedelta(days=1))

    assert new_copy.state == RESERVED
    assert Reservation.get_by_id(reservation.id).copy_id == new_copy.id
    assert_ledger_consistent(db)


def test_new_copy_for_waiting_queue_is_created_reserved(db, lent_copy, make_patron):
    copy, _ = lent_copy
    waiter = make_patron()
    reservation = Reservation.enqueue(waiter.id, copy.title_id, now=NOW)

    new_copy = Copy.acquire(copy.title_id, 'NEW-2', now=NOW)

    events = AuditLog.get_for_entity('copy', new_copy.id)
    assert [e.action for e in events] == ['Create']
    assert events[0].after_state['state'] == RESERVED
    held = Reservation.get_by_id(reservation.id)
    assert held.state == FULFILLED
    assert held.hold_until is not None
    assert Title.get_by_id(copy.title_id).available_copies == 0
    assert_ledger_consistent(db)
