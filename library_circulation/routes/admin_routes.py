from flask import Blueprint, current_app, jsonify, request

from models.audit_log import AuditLog, logging_sink
from models.errors import ValidationError
from models.patron import Patron
from models.sanction import Sanction
from models.system_config import SystemConfig
from routes.helpers import current_actor, get_payload, parse_time, require_fields
from scheduled_tasks import run_sweeps

# Create admin blueprint
admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


@admin_bp.route('/config', methods=['GET'])
def get_config():
    """Current circulation rules."""
    return jsonify({'success': True, 'config': SystemConfig.get()})


@admin_bp.route('/config', methods=['POST'])
def save_config():
    """Save circulation rule overrides.

    Accepts any subset of daily_fine_rate, loan_period_default, max_renewals,
    renewal_extension, reservation_expiry, reservation_hold_hours,
    block_threshold_unpaid_fines and max_active_loans.
    """
    config = SystemConfig.update(get_payload())
    return jsonify({'success': True, 'message': 'Configuration saved', 'config': config})


# ============= Sanctions =============

@admin_bp.route('/sanctions', methods=['POST'])
def impose_sanction():
    data = get_payload()
    require_fields(data, 'patron_id', 'sanction_type', 'start', 'end')
    sanction = Sanction.impose(
        data['patron_id'], data['sanction_type'],
        parse_time(data['start'], 'start'), parse_time(data['end'], 'end'),
        data.get('reason', ''), actor_id=current_actor()
    )
    return jsonify({'success': True, 'sanction': sanction.to_dict()}), 201


@admin_bp.route('/sanctions/<sanction_id>/lift', methods=['POST'])
def lift_sanction(sanction_id):
    sanction = Sanction.lift(sanction_id, actor_id=current_actor())
    return jsonify({'success': True, 'sanction': sanction.to_dict()})


# ============= Patron status =============

@admin_bp.route('/patrons/<patron_id>/status', methods=['POST'])
def set_patron_status(patron_id):
    """Activate or deactivate a patron: body {"active": true|false}."""
    data = get_payload()
    if not isinstance(data.get('active'), bool):
        raise ValidationError('active must be true or false')
    patron = Patron.require(patron_id)
    patron.set_active(data['active'], actor_id=current_actor())
    return jsonify({'success': True, 'patron': patron.to_dict()})


# ============= Sweeps & Audit =============

@admin_bp.route('/sweeps/run', methods=['POST'])
def run_sweeps_now():
    """Run the background sweeps immediately."""
    results = run_sweeps(current_app._get_current_object())
    return jsonify({'success': True, 'results': results})


@admin_bp.route('/audit', methods=['GET'])
def list_audit_events():
    """Audit events for one entity (?entity_type=loan&entity_id=...)."""
    entity_type = request.args.get('entity_type')
    entity_id = request.args.get('entity_id')
    if not entity_type or not entity_id:
        raise ValidationError('entity_type and entity_id are required')
    events = AuditLog.get_for_entity(entity_type, entity_id)
    return jsonify({'success': True, 'events': [e.to_dict() for e in events]})


@admin_bp.route('/audit/dispatch', methods=['POST'])
def dispatch_audit_events():
    sink = current_app.config.get('AUDIT_SINK') or logging_sink
    delivered = AuditLog.dispatch_pending(sink)
    return jsonify({'success': True, 'delivered': delivered})
