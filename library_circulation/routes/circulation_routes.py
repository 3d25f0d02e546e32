from datetime import timedelta

from flask import Blueprint, jsonify

from models.copy import Copy
from models.errors import (CopyNotFound, FineNotFound, LoanNotFound,
                           ReservationNotFound, TitleNotFound, ValidationError)
from models.fine import Fine
from models.loan import Loan
from models.patron import Patron
from models.payment import Payment
from models.reservation import Reservation
from models.sanction import Sanction, SanctionPolicy
from models.title import Title
from routes.helpers import (current_actor, get_payload, parse_int, parse_time,
                            require_fields)

# Create circulation blueprint
circulation_bp = Blueprint('circulation', __name__, url_prefix='/api')


# ============= Titles & Copies =============

@circulation_bp.route('/titles', methods=['POST'])
def create_title():
    """Register a title."""
    data = get_payload()
    require_fields(data, 'title')
    title = Title.create(data['title'], data.get('isbn'), actor_id=current_actor())
    return jsonify({'success': True, 'title': title.to_dict()}), 201


@circulation_bp.route('/titles/<title_id>', methods=['GET'])
def get_title(title_id):
    """Title with its copies and reservation queue."""
    title = Title.get_by_id(title_id)
    if not title:
        raise TitleNotFound(f'Title {title_id} not found')

    return jsonify({
        'success': True,
        'title': title.to_dict(),
        'copies': [c.to_dict() for c in title.get_copies()],
        'queue': [r.to_dict() for r in Reservation.get_queue(title_id)],
    })


@circulation_bp.route('/titles/<title_id>/copies', methods=['POST'])
def acquire_copy(title_id):
    """Add a physical copy to a title."""
    data = get_payload()
    require_fields(data, 'barcode')
    copy = Copy.acquire(title_id, data['barcode'], actor_id=current_actor())
    return jsonify({'success': True, 'copy': copy.to_dict()}), 201


@circulation_bp.route('/copies/<copy_id>', methods=['GET'])
def get_copy(copy_id):
    copy = Copy.get_by_id(copy_id)
    if not copy:
        raise CopyNotFound(f'Copy {copy_id} not found')
    loan = Loan.get_open_loan_for_copy(copy_id)
    return jsonify({
        'success': True,
        'copy': copy.to_dict(),
        'open_loan': loan.to_dict() if loan else None,
    })


@circulation_bp.route('/copies/<copy_id>/maintenance', methods=['POST'])
def send_copy_to_maintenance(copy_id):
    copy = Copy.send_to_maintenance(copy_id, actor_id=current_actor())
    return jsonify({'success': True, 'copy': copy.to_dict()})


@circulation_bp.route('/copies/<copy_id>/restore', methods=['POST'])
def restore_copy(copy_id):
    """Bring a copy back from maintenance."""
    reservation = Copy.return_from_maintenance(copy_id, actor_id=current_actor())
    return jsonify({
        'success': True,
        'copy': Copy.get_by_id(copy_id).to_dict(),
        'fulfilled_reservation': reservation.to_dict() if reservation else None,
    })


# ============= Patrons =============

@circulation_bp.route('/patrons', methods=['POST'])
def create_patron():
    data = get_payload()
    require_fields(data, 'name', 'email')
    roles = data.get('roles') or {}
    if not isinstance(roles, dict):
        raise ValidationError('roles must be an object of role name to attributes')
    patron = Patron.create(data['name'], data['email'], roles, actor_id=current_actor())
    return jsonify({'success': True, 'patron': patron.to_dict()}), 201


@circulation_bp.route('/patrons/<patron_id>', methods=['GET'])
def get_patron(patron_id):
    """Patron account overview: loans, reservations, fines and standing."""
    patron = Patron.require(patron_id)
    return jsonify({
        'success': True,
        'patron': patron.to_dict(),
        'loans': [loan.to_dict() for loan in patron.get_loans()],
        'reservations': [r.to_dict() for r in Reservation.get_patron_reservations(patron_id)],
        'fines': [f.to_dict() for f in Fine.get_patron_fines(patron_id)],
        'sanctions': [s.to_dict() for s in Sanction.get_patron_sanctions(patron_id)],
        'outstanding_balance': SanctionPolicy.outstanding_balance(patron_id),
        'is_blocked': SanctionPolicy.is_blocked(patron_id),
    })


# ============= Loans =============

@circulation_bp.route('/loans', methods=['POST'])
def checkout():
    """Check a copy out to a patron."""
    data = get_payload()
    require_fields(data, 'patron_id', 'copy_id')

    days = parse_int(data.get('loan_period_days'), 'loan_period_days')
    loan_period = None
    if days is not None:
        try:
            loan_period = timedelta(days=days)
        except OverflowError:
            raise ValidationError('loan_period_days is out of range')

    loan = Loan.checkout(data['patron_id'], data['copy_id'], loan_period,
                         actor_id=current_actor())
    return jsonify({
        'success': True,
        'message': f'Copy checked out. Due: {loan.due_time}',
        'loan': loan.to_dict(),
    }), 201


@circulation_bp.route('/loans/<loan_id>', methods=['GET'])
def get_loan(loan_id):
    loan = Loan.get_by_id(loan_id)
    if not loan:
        raise LoanNotFound(f'Loan {loan_id} not found')
    fine = loan.get_fine()
    return jsonify({
        'success': True,
        'loan': loan.to_dict(),
        'fine': fine.to_dict() if fine else None,
    })


@circulation_bp.route('/loans/<loan_id>/renew', methods=['POST'])
def renew_loan(loan_id):
    loan = Loan.renew(loan_id, actor_id=current_actor())
    return jsonify({
        'success': True,
        'message': f'Loan renewed successfully. New due date: {loan.due_time}',
        'loan': loan.to_dict(),
    })


@circulation_bp.route('/loans/<loan_id>/return', methods=['POST'])
def return_loan(loan_id):
    """Process a return; reports any fine charged."""
    data = get_payload()
    return_time = parse_time(data.get('return_time'), 'return_time')

    loan = Loan.return_copy(loan_id, return_time, actor_id=current_actor())
    fine = loan.get_fine()

    message = 'Copy returned successfully'
    if fine:
        message += f'. Late fine: {fine.amount:,.2f}'
    return jsonify({
        'success': True,
        'message': message,
        'loan': loan.to_dict(),
        'fine': fine.to_dict() if fine else None,
    })


# ============= Reservations =============

@circulation_bp.route('/reservations', methods=['POST'])
def reserve_title():
    """Join the reservation queue for a title."""
    data = get_payload()
    require_fields(data, 'patron_id', 'title_id')
    priority = parse_int(data.get('priority'), 'priority', default=1)

    reservation = Reservation.enqueue(data['patron_id'], data['title_id'], priority,
                                      actor_id=current_actor())
    return jsonify({
        'success': True,
        'message': f'Title reserved (Queue position: {reservation.get_queue_position()})',
        'reservation': reservation.to_dict(),
    }), 201


@circulation_bp.route('/reservations/<reservation_id>', methods=['GET'])
def get_reservation(reservation_id):
    reservation = Reservation.get_by_id(reservation_id)
    if not reservation:
        raise ReservationNotFound(f'Reservation {reservation_id} not found')
    return jsonify({
        'success': True,
        'reservation': reservation.to_dict(),
        'queue_position': reservation.get_queue_position(),
    })


@circulation_bp.route('/reservations/<reservation_id>/cancel', methods=['POST'])
def cancel_reservation(reservation_id):
    """Cancel a reservation; only its owner may do so."""
    data = get_payload()
    require_fields(data, 'patron_id')
    reservation = Reservation.cancel(reservation_id, data['patron_id'],
                                     actor_id=current_actor())
    return jsonify({
        'success': True,
        'message': 'Reservation cancelled successfully',
        'reservation': reservation.to_dict(),
    })


# ============= Fines & Payments =============

@circulation_bp.route('/fines/<fine_id>', methods=['GET'])
def get_fine(fine_id):
    fine = Fine.get_by_id(fine_id)
    if not fine:
        raise FineNotFound(f'Fine {fine_id} not found')
    return jsonify({
        'success': True,
        'fine': fine.to_dict(),
        'payments': [p.to_dict() for p in Payment.get_for_fine(fine_id)],
    })


@circulation_bp.route('/fines/<fine_id>/payments', methods=['POST'])
def pay_fine(fine_id):
    """Apply a (possibly partial) payment to a fine."""
    data = get_payload()
    require_fields(data, 'amount', 'method')

    payment = Payment.apply_payment(fine_id, data['amount'], data['method'],
                                    receipt=data.get('receipt'),
                                    actor_id=current_actor())
    fine = Fine.get_by_id(fine_id)
    return jsonify({
        'success': True,
        'message': f'Payment of {payment.amount:,.2f} recorded',
        'payment': payment.to_dict(),
        'fine': fine.to_dict(),
    }), 201
