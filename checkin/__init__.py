# QR Check-in - Package
"""
Attendance session package for the QR check-in service.
Contains the session protocol modules and the Flask API routes.
"""

__version__ = "1.0.0"
__description__ = "Time-boxed QR code attendance sessions with duplicate-safe check-in"

from .modules.token_codec import SessionDescriptor, Geofence, DecodeResult, DecodeError, encode, decode
from .modules.session_generator import SessionGenerator, time_remaining
from .modules.attendance_validator import AttendanceValidator, Location, MarkResult, Rejected
from .modules.attendance_store import (
    AttendanceRecord,
    AttendanceStore,
    MemoryAttendanceStore,
    PersistenceError,
    DuplicateRecordError,
)
from .modules.database_manager import DatabaseManager

__all__ = [
    'SessionDescriptor',
    'Geofence',
    'DecodeResult',
    'DecodeError',
    'encode',
    'decode',
    'SessionGenerator',
    'time_remaining',
    'AttendanceValidator',
    'Location',
    'MarkResult',
    'Rejected',
    'AttendanceRecord',
    'AttendanceStore',
    'MemoryAttendanceStore',
    'PersistenceError',
    'DuplicateRecordError',
    'DatabaseManager'
]
