"""
Library Circulation Engine - Flask Application
Main application file
"""
import atexit
import logging
import os

from flask import Flask, jsonify
from flask_socketio import emit, join_room

from config.config import Config
from extensions import STAFF_ROOM, socketio, socketio_sink
from models.database import close_db, init_db
from models.errors import CirculationError
from routes.admin_routes import admin_bp
from routes.circulation_routes import circulation_bp
from scheduled_tasks import shutdown_scheduler, start_scheduler

logger = logging.getLogger(__name__)


def create_app(test_config=None):
    """Build the application.

    ``test_config`` overrides entries of ``Config`` (database path, scheduler
    switch, audit sink, ...).
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    app.config.setdefault('AUDIT_SINK', socketio_sink)
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    db_dir = os.path.dirname(app.config['DATABASE_PATH'])
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    # Initialize SocketIO for live circulation events
    socketio.init_app(app)

    # Initialize database
    with app.app_context():
        init_db()

    app.register_blueprint(circulation_bp)
    app.register_blueprint(admin_bp)

    @app.errorhandler(CirculationError)
    def handle_circulation_error(error):
        """Map engine errors to JSON responses."""
        if error.status_code >= 500:
            logger.warning('%s: %s', error.code, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found(error):
        """404 error handler"""
        return jsonify({'success': False, 'error': 'not_found',
                        'message': 'Resource not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        """500 error handler"""
        return jsonify({'success': False, 'error': 'internal_error',
                        'message': 'Internal server error'}), 500

    @app.teardown_appcontext
    def close_connection(exception):
        """Close database connection"""
        close_db(exception)

    # Start scheduled background sweeps
    start_scheduler(app)

    return app


# ==================== SOCKETIO EVENTS ====================

@socketio.on('join')
def handle_join(data):
    """Subscribe a patron to their own notifications (reservation ready, ...)."""
    patron_id = (data or {}).get('patron_id')
    if not patron_id:
        emit('error', {'message': 'patron_id is required'})
        return
    join_room(patron_id)
    emit('joined', {'room': patron_id})


@socketio.on('join_staff')
def handle_join_staff():
    """Subscribe a staff dashboard to the audit event stream."""
    join_room(STAFF_ROOM)
    emit('joined', {'room': STAFF_ROOM})


# Ensure scheduler shuts down gracefully
atexit.register(shutdown_scheduler)


if __name__ == '__main__':
    app = create_app()
    socketio.run(app, debug=False, host='0.0.0.0', port=5000,
                 allow_unsafe_werkzeug=True)
