"""
Attendance Store Module - QR Check-in Attendance System

Defines the attendance record structure and the storage interface the
validator writes through. Any backend (SQLite, a hosted database, browser
storage behind an API) can be plugged in as long as it offers an atomic
"insert if absent" on (user_id, session_token).
"""

import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from checkin.modules.token_codec import SessionDescriptor, format_timestamp


class PersistenceError(Exception):
    """Storage backend failed or is unavailable."""


class DuplicateRecordError(PersistenceError):
    """A record already exists for the (user_id, session_token) pair."""

    def __init__(self, user_id: str, session_token: str):
        super().__init__(f"Attendance already recorded for user {user_id} in session {session_token}")
        self.user_id = user_id
        self.session_token = session_token


@dataclass(frozen=True)
class AttendanceRecord:
    """One user's outcome for one session. Never modified once created."""
    record_id: str
    user_id: str
    class_id: str
    session_token: str
    recorded_at: datetime
    outcome: str
    class_name: str = ''
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['recorded_at'] = format_timestamp(self.recorded_at)
        return data


class AttendanceStore:
    """
    Storage interface for attendance sessions and records.

    Implementations must make ``save`` atomic: two concurrent saves for the
    same (user_id, session_token) pair must leave exactly one record and
    raise DuplicateRecordError for the other.
    """

    def save(self, record: AttendanceRecord) -> AttendanceRecord:
        raise NotImplementedError

    def exists(self, user_id: str, session_token: str) -> bool:
        raise NotImplementedError

    def list_by_user(self, user_id: str) -> List[AttendanceRecord]:
        raise NotImplementedError

    def save_session(self, descriptor: SessionDescriptor) -> SessionDescriptor:
        raise NotImplementedError

    def get_session(self, session_token: str) -> Optional[SessionDescriptor]:
        raise NotImplementedError

    def list_sessions(self, class_id: str) -> List[SessionDescriptor]:
        raise NotImplementedError


class MemoryAttendanceStore(AttendanceStore):
    """Process-local store, used for offline mode and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[tuple, AttendanceRecord] = {}
        self._sessions: Dict[str, SessionDescriptor] = {}

    def save(self, record: AttendanceRecord) -> AttendanceRecord:
        key = (record.user_id, record.session_token)
        with self._lock:
            if key in self._records:
                raise DuplicateRecordError(record.user_id, record.session_token)
            self._records[key] = record
        return record

    def exists(self, user_id: str, session_token: str) -> bool:
        with self._lock:
            return (user_id, session_token) in self._records

    def list_by_user(self, user_id: str) -> List[AttendanceRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.recorded_at, reverse=True)

    def save_session(self, descriptor: SessionDescriptor) -> SessionDescriptor:
        with self._lock:
            self._sessions[descriptor.session_token] = descriptor
        return descriptor

    def get_session(self, session_token: str) -> Optional[SessionDescriptor]:
        with self._lock:
            return self._sessions.get(session_token)

    def list_sessions(self, class_id: str) -> List[SessionDescriptor]:
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.class_id == class_id]
        return sorted(sessions, key=lambda s: s.expires_at, reverse=True)
