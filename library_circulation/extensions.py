from typing import Any, Dict

from flask_socketio import SocketIO

from models.audit_log import logging_sink

# Initialize SocketIO without app binding
# Will be bound to app in create_app() function
socketio: SocketIO = SocketIO(
    cors_allowed_origins="*",
    async_mode='threading'
)

STAFF_ROOM = 'staff'


def socketio_sink(event: Dict[str, Any]) -> None:
    """Audit sink that pushes events to connected clients.

    Staff dashboards in the 'staff' room receive every event. A patron whose
    reservation has just been fulfilled gets a 'reservation_ready' notice in
    their own room.
    """
    logging_sink(event)
    socketio.emit('audit_event', event, to=STAFF_ROOM)

    before = event.get('beforeState') or {}
    after = event.get('afterState') or {}
    if (event['entityType'] == 'reservation'
            and before.get('state') == 'pending'
            and after.get('state') == 'fulfilled'):
        socketio.emit('reservation_ready', {
            'reservation_id': event['entityId'],
            'title_id': after.get('title_id'),
            'copy_id': after.get('copy_id'),
            'hold_until': after.get('hold_until'),
        }, to=after.get('patron_id'))
