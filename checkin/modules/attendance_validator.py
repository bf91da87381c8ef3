"""
Attendance Validator Module - QR Check-in Attendance System

This module is the only place attendance records are created. It takes a
decoded session descriptor and the acting user, checks expiry, location
and duplicates, classifies the arrival as present or late and writes
exactly one record, or returns a typed rejection without writing anything.

Features:
- Expiry validation
- Geofence validation with haversine distance
- Duplicate prevention backed by the store's unique constraint
- Present / late classification with a grace window
- Per-user attendance history and statistics
"""

import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from checkin.modules.attendance_store import (
    AttendanceRecord,
    AttendanceStore,
    DuplicateRecordError,
)
from checkin.modules.token_codec import DecodeResult, SessionDescriptor, decode, ensure_utc, utc_now

EARTH_RADIUS_METERS = 6371000

# Attendance outcomes
OUTCOME_PRESENT = 'present'
OUTCOME_LATE = 'late'
OUTCOME_ABSENT = 'absent'


class Rejected:
    """Reasons a structurally valid submission produces no record."""
    MALFORMED_TOKEN = 'malformed_token'
    EXPIRED = 'expired'
    OUT_OF_RANGE = 'out_of_range'
    DUPLICATE = 'duplicate'


REJECTION_MESSAGES = {
    Rejected.MALFORMED_TOKEN: 'This is not a valid attendance code. Please scan again.',
    Rejected.EXPIRED: 'Attendance code has expired. Ask your teacher for a new one.',
    Rejected.OUT_OF_RANGE: 'You must be in the classroom to mark attendance.',
    Rejected.DUPLICATE: 'Attendance already marked for this session.',
}


@dataclass(frozen=True)
class Location:
    """Position reported by the scanning device."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None

    def __post_init__(self):
        for name in ('latitude', 'longitude'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"Location {name} must be a number")
            if not math.isfinite(value):
                raise ValueError(f"Location {name} must be finite")

        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude out of range: {self.longitude}")
        if self.accuracy is not None and not (math.isfinite(self.accuracy) and self.accuracy >= 0):
            raise ValueError(f"Location accuracy must be a non-negative number: {self.accuracy}")


@dataclass
class MarkResult:
    """Outcome of a mark_attendance call."""
    success: bool
    message: str
    record: Optional[AttendanceRecord] = None
    rejection: Optional[str] = None
    distance_meters: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {'success': self.success, 'message': self.message}
        if self.record is not None:
            result['record'] = self.record.to_dict()
        if self.rejection is not None:
            result['error_type'] = self.rejection
        if self.distance_meters is not None:
            result['distance_meters'] = round(self.distance_meters, 1)
        return result


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = (math.sin(dphi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2)
    # Clamp rounding error; NaN passes through
    if a > 1.0:
        a = 1.0
    elif a < 0.0:
        a = 0.0
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class AttendanceValidator:
    """
    Turns a session descriptor plus a user into an attendance record.
    Every expected failure comes back as a MarkResult; only storage
    failures (PersistenceError) propagate to the caller.
    """

    def __init__(self, store: AttendanceStore, grace_minutes: float = 15,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the validator.

        Args:
            store (AttendanceStore): Where records are persisted
            grace_minutes (float): Minutes after session start still counted as present
            clock (callable): Returns the current aware UTC datetime
        """
        self.store = store
        self.grace_window = timedelta(minutes=grace_minutes)
        self.clock = clock or utc_now
        self.logger = logging.getLogger(__name__)

    def mark_attendance(self, descriptor: Union[SessionDescriptor, DecodeResult, None],
                        user_id: str,
                        now: Optional[datetime] = None,
                        location: Optional[Location] = None) -> MarkResult:
        """
        Validate a submission and record attendance.

        Args:
            descriptor: Decoded session, or the DecodeResult of a scan
            user_id (str): User submitting attendance
            now (datetime): Submission time, defaults to the clock
            location (Location): Reported device position, if available

        Returns:
            MarkResult: the new record, or the rejection reason

        Raises:
            ValueError: if user_id is empty
            PersistenceError: if the store is unavailable
        """
        if not user_id:
            raise ValueError("user_id is required")

        if isinstance(descriptor, DecodeResult):
            descriptor = descriptor.descriptor if descriptor.valid else None
        if descriptor is None:
            return self._reject(Rejected.MALFORMED_TOKEN, user_id)

        now = ensure_utc(now or self.clock())

        if now > descriptor.expires_at:
            return self._reject(Rejected.EXPIRED, user_id, descriptor)

        distance = None
        if descriptor.geofence is not None:
            if location is None:
                return self._reject(Rejected.OUT_OF_RANGE, user_id, descriptor)

            distance = haversine_distance(
                descriptor.geofence.latitude, descriptor.geofence.longitude,
                location.latitude, location.longitude
            )
            if not distance <= descriptor.geofence.radius_meters:
                result = self._reject(Rejected.OUT_OF_RANGE, user_id, descriptor)
                result.distance_meters = distance if math.isfinite(distance) else None
                return result

        if self.store.exists(user_id, descriptor.session_token):
            return self._reject(Rejected.DUPLICATE, user_id, descriptor)

        outcome = self._determine_outcome(descriptor, now)
        record = AttendanceRecord(
            record_id=f"att_{secrets.token_hex(8)}",
            user_id=str(user_id),
            class_id=descriptor.class_id,
            class_name=descriptor.class_name,
            session_token=descriptor.session_token,
            recorded_at=now,
            outcome=outcome,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None
        )

        try:
            self.store.save(record)
        except DuplicateRecordError:
            # Lost a race with a concurrent submission for the same pair
            return self._reject(Rejected.DUPLICATE, user_id, descriptor)

        self.logger.info(
            f"Attendance recorded: user {user_id}, class {descriptor.class_id}, outcome {outcome}"
        )
        return MarkResult(
            success=True,
            message=f"Attendance marked as {outcome}",
            record=record,
            distance_meters=distance
        )

    def mark_from_token(self, token_string: str, user_id: str,
                        now: Optional[datetime] = None,
                        location: Optional[Location] = None) -> MarkResult:
        """Decode a scanned or typed token and mark attendance with it."""
        return self.mark_attendance(decode(token_string), user_id, now=now, location=location)

    def _determine_outcome(self, descriptor: SessionDescriptor, now: datetime) -> str:
        """
        Classify a submission by how long after the session start it came in.

        Args:
            descriptor (SessionDescriptor): Session being attended
            now (datetime): Submission time

        Returns:
            str: present or late
        """
        if descriptor.issued_at is None:
            # No start time to measure from
            return OUTCOME_PRESENT

        if now - descriptor.issued_at <= self.grace_window:
            return OUTCOME_PRESENT
        return OUTCOME_LATE

    def _reject(self, reason: str, user_id: str,
                descriptor: Optional[SessionDescriptor] = None) -> MarkResult:
        class_id = descriptor.class_id if descriptor else 'unknown'
        self.logger.warning(f"Attendance rejected ({reason}): user {user_id}, class {class_id}")
        return MarkResult(
            success=False,
            message=REJECTION_MESSAGES[reason],
            rejection=reason
        )

    def get_user_attendance(self, user_id: str) -> List[AttendanceRecord]:
        """Records for a user, newest first."""
        return self.store.list_by_user(user_id)

    def get_attendance_stats(self, user_id: str) -> Dict[str, Any]:
        """
        Summarize a user's attendance history.

        Args:
            user_id (str): User to summarize

        Returns:
            Dict[str, Any]: Counts per outcome and the attendance rate in percent
        """
        records = self.get_user_attendance(user_id)

        total_classes = len(records)
        present_count = sum(1 for r in records if r.outcome == OUTCOME_PRESENT)
        late_count = sum(1 for r in records if r.outcome == OUTCOME_LATE)
        absent_count = sum(1 for r in records if r.outcome == OUTCOME_ABSENT)
        attended = present_count + late_count
        rate = round(attended / total_classes * 100) if total_classes > 0 else 0

        return {
            'total_classes': total_classes,
            'attended': attended,
            'rate': rate,
            'present_count': present_count,
            'late_count': late_count,
            'absent_count': absent_count
        }
