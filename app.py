"""
QR Check-in - Main Application

This module is the entry point for the QR attendance check-in service.
It wires configuration, logging, the attendance store, the session
generator and the attendance validator into a Flask application.

Features:
- Time-boxed QR attendance sessions with optional geofence
- Session regeneration and countdown
- Present / late classification
- Duplicate-safe attendance recording
"""

import logging
import math

import qrcode
from flask import Flask

from config import init_config
from checkin.modules.attendance_store import MemoryAttendanceStore
from checkin.modules.attendance_validator import AttendanceValidator
from checkin.modules.database_manager import DatabaseManager
from checkin.modules.session_generator import SessionGenerator
from checkin.routes import attendance_bp


def _stored_minutes(store, key, default):
    """Minutes from the system_settings table, or the configured default."""
    if not isinstance(store, DatabaseManager):
        return default

    stored = store.get_system_setting(key)
    if stored is None:
        return default
    try:
        minutes = float(stored)
    except ValueError:
        minutes = None
    if minutes is None or not math.isfinite(minutes) or minutes < 0:
        logging.getLogger(__name__).warning(f"Ignoring invalid {key} setting: {stored!r}")
        return default
    return minutes


def create_app(config_name=None, store=None, clock=None):
    """
    Create and configure the Flask application.

    Args:
        config_name (str): Key into config.config, defaults to FLASK_ENV
        store (AttendanceStore): Store to use instead of the configured one
        clock (callable): Clock shared by the generator and validator

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    config_class = init_config(app, config_name)

    logging.basicConfig(
        level=getattr(logging, str(config_class.LOG_LEVEL).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )
    logger = logging.getLogger(__name__)

    if store is None:
        if config_class.STORAGE_BACKEND == 'memory':
            store = MemoryAttendanceStore()
        else:
            store = DatabaseManager(config_class.DATABASE_PATH)

    # Settings saved with update_system_setting win over the configuration
    grace_minutes = _stored_minutes(store, 'grace_window_minutes', config_class.ATTENDANCE_GRACE_MINUTES)
    window_minutes = _stored_minutes(store, 'default_window_minutes', config_class.SESSION_WINDOW_MINUTES)

    app.extensions['checkin'] = {
        'store': store,
        'generator': SessionGenerator(
            store=store,
            token_bytes=config_class.SESSION_TOKEN_BYTES,
            default_window_minutes=window_minutes,
            clock=clock,
            qr_settings={
                'box_size': config_class.QR_CODE_SIZE,
                'border': config_class.QR_CODE_BORDER,
                'error_correction': getattr(qrcode.constants, f"ERROR_CORRECT_{config_class.QR_CODE_ERROR_CORRECT}"),
            }
        ),
        'validator': AttendanceValidator(store, grace_minutes=grace_minutes, clock=clock),
    }

    app.register_blueprint(attendance_bp)

    logger.info(f"QR Check-in started with {type(store).__name__}")
    return app


if __name__ == '__main__':
    application = create_app()
    application.run(debug=application.config.get('DEBUG', False), host='0.0.0.0', port=5000)
