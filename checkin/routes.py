"""
Attendance API routes.

Thin JSON layer over the session generator and the attendance validator.
Identity comes from the request body; authentication and access control
are handled in front of this API.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from checkin.modules.attendance_store import PersistenceError
from checkin.modules.attendance_validator import Location, Rejected
from checkin.modules.token_codec import Geofence

logger = logging.getLogger(__name__)

attendance_bp = Blueprint('attendance', __name__)

REJECTION_STATUS = {
    Rejected.MALFORMED_TOKEN: 422,
    Rejected.EXPIRED: 410,
    Rejected.OUT_OF_RANGE: 403,
    Rejected.DUPLICATE: 409,
}


def _services():
    return current_app.extensions['checkin']


def _error(message, error_type, status):
    return jsonify({'success': False, 'message': message, 'error_type': error_type}), status


def _parse_geofence(data):
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError("geofence must be an object")
    if 'radius' not in data:
        data = dict(data, radius=current_app.config['GEOFENCE_DEFAULT_RADIUS_METERS'])
    return Geofence.from_dict(data)


def _parse_location(data):
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError("location must be an object")
    try:
        return Location(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            accuracy=float(data['accuracy']) if data.get('accuracy') is not None else None
        )
    except KeyError as e:
        raise ValueError(f"location is missing {e.args[0]}") from e
    except TypeError as e:
        raise ValueError("location coordinates must be numbers") from e


def _session_response(descriptor, status):
    services = _services()
    qr = services['generator'].render_qr_code(
        descriptor,
        wrap_base64=current_app.config['SESSION_TOKEN_BASE64']
    )
    return jsonify({
        'success': True,
        'session': descriptor.to_payload(),
        'token': qr['token'],
        'image_base64': qr['image_base64'],
        'filename': qr['filename'],
        'countdown': services['generator'].countdown(descriptor)
    }), status


@attendance_bp.app_errorhandler(PersistenceError)
def handle_persistence_error(error):
    logger.error(f"Attendance store unavailable: {str(error)}")
    return _error('Attendance could not be saved right now. Please try again.', 'persistence_error', 503)


@attendance_bp.route('/health')
def health():
    return jsonify({'status': 'ok'})


@attendance_bp.route('/api/sessions', methods=['POST'])
def create_session():
    """Open an attendance session and return its QR code"""
    data = request.get_json(silent=True) or {}

    try:
        descriptor = _services()['generator'].generate(
            class_id=str(data.get('class_id') or ''),
            issuer_id=str(data.get('issuer_id') or ''),
            window_minutes=data.get('window_minutes'),
            geofence=_parse_geofence(data.get('geofence')),
            class_name=str(data.get('class_name') or '')
        )
    except ValueError as e:
        return _error(str(e), 'invalid_request', 400)

    return _session_response(descriptor, 201)


@attendance_bp.route('/api/sessions/regenerate', methods=['POST'])
def regenerate_session():
    """Replace a session with a fresh token"""
    data = request.get_json(silent=True) or {}
    session_token = data.get('session_token')
    if not session_token:
        return _error('No session specified', 'invalid_request', 400)

    previous = _services()['store'].get_session(session_token)
    if previous is None:
        return _error('Session not found', 'not_found', 404)

    try:
        descriptor = _services()['generator'].regenerate(
            previous,
            window_minutes=data.get('window_minutes')
        )
    except ValueError as e:
        return _error(str(e), 'invalid_request', 400)

    return _session_response(descriptor, 201)


@attendance_bp.route('/api/sessions/<session_token>/remaining')
def session_remaining(session_token):
    services = _services()
    descriptor = services['store'].get_session(session_token)
    if descriptor is None:
        return _error('Session not found', 'not_found', 404)

    countdown = services['generator'].countdown(descriptor)
    countdown['state'] = services['generator'].session_state(descriptor)
    countdown['can_regenerate'] = services['generator'].can_regenerate(descriptor)
    return jsonify(countdown)


@attendance_bp.route('/api/classes/<class_id>/session')
def class_session(class_id):
    """Currently open session for a class, with its QR code"""
    descriptor = _services()['generator'].active_session(class_id)
    if descriptor is None:
        return _error('No open session for this class', 'not_found', 404)

    return _session_response(descriptor, 200)


@attendance_bp.route('/api/attendance', methods=['POST'])
def mark_attendance():
    """Record attendance from a scanned or typed code"""
    data = request.get_json(silent=True) or {}
    user_id = str(data.get('user_id') or '').strip()
    if not user_id:
        return _error('No user specified', 'invalid_request', 400)

    try:
        location = _parse_location(data.get('location'))
    except ValueError as e:
        return _error(str(e), 'invalid_request', 400)

    result = _services()['validator'].mark_from_token(data.get('token') or '', user_id, location=location)

    if result.success:
        return jsonify(result.to_dict()), 201
    return jsonify(result.to_dict()), REJECTION_STATUS[result.rejection]


@attendance_bp.route('/api/attendance/<user_id>')
def user_attendance(user_id):
    validator = _services()['validator']
    records = validator.get_user_attendance(user_id)
    return jsonify({
        'user_id': user_id,
        'records': [record.to_dict() for record in records],
        'stats': validator.get_attendance_stats(user_id)
    })
