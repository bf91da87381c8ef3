"""
Token Codec Module - QR Check-in Attendance System

This module defines the attendance session descriptor and the reversible
encoding used to carry it inside a QR code or a manually typed code.
A token is the JSON form of the descriptor, protected by a short checksum
and optionally wrapped in base64 so that it survives any QR reader.

Features:
- Immutable session descriptor and geofence types
- JSON encoding with integrity checksum
- Optional base64 wrapping for binary-safe transport
- Tolerant decoding of raw JSON, base64 JSON and legacy field names
- Typed decode results; decoding never raises on scanned input
"""

import base64
import hashlib
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CHECKSUM_LENGTH = 16

# Wire names for descriptor fields
REQUIRED_FIELDS = ('classId', 'sessionToken', 'expiresAt')

# Older QR codes used different names for the same fields
LEGACY_ALIASES = {
    'teacherId': 'issuerId',
    'sessionId': 'sessionToken',
    'token': 'sessionToken',
    'timestamp': 'issuedAt',
    'location': 'geofence',
}


class DecodeError:
    """Kinds of decode failure."""
    MALFORMED = 'malformed'
    MISSING_FIELD = 'missing_field'


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a wire timestamp.

    Strings are ISO-8601 (a trailing ``Z`` is accepted); numbers are epoch
    milliseconds as written by the legacy class QR codes.

    Raises:
        ValueError: if the value is not a usable timestamp
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"Invalid timestamp: {value!r}") from e

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return ensure_utc(datetime.fromisoformat(text))

    raise ValueError(f"Invalid timestamp: {value!r}")


@dataclass(frozen=True)
class Geofence:
    """Circular area a scanner must be inside of."""
    latitude: float
    longitude: float
    radius_meters: float

    def __post_init__(self):
        for name in ('latitude', 'longitude', 'radius_meters'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"Geofence {name} must be a number")
            if not math.isfinite(value):
                raise ValueError(f"Geofence {name} must be finite")

        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude out of range: {self.longitude}")
        if self.radius_meters <= 0:
            raise ValueError(f"Geofence radius must be positive: {self.radius_meters}")

    def to_dict(self) -> Dict[str, float]:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'radius': self.radius_meters,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Geofence':
        if not isinstance(data, dict):
            raise ValueError("Geofence must be an object")
        missing = [key for key in ('latitude', 'longitude', 'radius') if key not in data]
        if missing:
            raise ValueError(f"Geofence is missing: {', '.join(missing)}")
        return cls(data['latitude'], data['longitude'], data['radius'])


@dataclass(frozen=True)
class SessionDescriptor:
    """
    One open attendance window for one class meeting.

    Descriptors are never modified after they are issued; regenerating a
    session produces a new descriptor with a new token.
    """
    class_id: str
    session_token: str
    expires_at: datetime
    issuer_id: str = ''
    class_name: str = ''
    issued_at: Optional[datetime] = None
    geofence: Optional[Geofence] = None

    def __post_init__(self):
        for name in ('class_id', 'session_token', 'issuer_id', 'class_name'):
            if not isinstance(getattr(self, name), str):
                raise TypeError(f"{name} must be a string")
        if not self.class_id:
            raise ValueError("class_id is required")
        if not self.session_token:
            raise ValueError("session_token is required")

        object.__setattr__(self, 'expires_at', ensure_utc(self.expires_at))
        if self.issued_at is not None:
            object.__setattr__(self, 'issued_at', ensure_utc(self.issued_at))
            if self.expires_at <= self.issued_at:
                raise ValueError("expires_at must be later than issued_at")

    def to_payload(self) -> Dict[str, Any]:
        """Wire representation, without checksum."""
        payload = {
            'classId': self.class_id,
            'className': self.class_name,
            'issuerId': self.issuer_id,
            'sessionToken': self.session_token,
            'expiresAt': format_timestamp(self.expires_at),
        }
        if self.issued_at is not None:
            payload['issuedAt'] = format_timestamp(self.issued_at)
        if self.geofence is not None:
            payload['geofence'] = self.geofence.to_dict()
        return payload


@dataclass
class DecodeResult:
    """Outcome of decoding a scanned or typed token."""
    valid: bool
    descriptor: Optional[SessionDescriptor] = None
    error_type: Optional[str] = None
    error: Optional[str] = None
    field: Optional[str] = None

    @classmethod
    def failure(cls, error_type: str, error: str, field_name: str = None) -> 'DecodeResult':
        return cls(valid=False, error_type=error_type, error=error, field=field_name)

    def to_dict(self) -> Dict[str, Any]:
        if self.valid:
            return {'valid': True, 'descriptor': self.descriptor.to_payload()}
        result = {'valid': False, 'error': self.error, 'error_type': self.error_type}
        if self.field:
            result['field'] = self.field
        return result


def _checksum(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()[:CHECKSUM_LENGTH]


def encode(descriptor: SessionDescriptor, wrap_base64: bool = True) -> str:
    """
    Serialize a descriptor into a token string.

    Args:
        descriptor (SessionDescriptor): Session to encode
        wrap_base64 (bool): Wrap the JSON text in base64

    Returns:
        str: Token string, identical for identical descriptors
    """
    payload = descriptor.to_payload()
    payload['checksum'] = _checksum(payload)
    text = json.dumps(payload, sort_keys=True)

    if wrap_base64:
        return base64.b64encode(text.encode('utf-8')).decode('ascii')
    return text


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        pass

    # Not JSON on its own; try the base64 wrapped form
    decoded = base64.b64decode(text, validate=True).decode('utf-8')
    return json.loads(decoded)


def _apply_aliases(data: Dict[str, Any]) -> Dict[str, Any]:
    normalized = dict(data)
    for legacy, current in LEGACY_ALIASES.items():
        if legacy in normalized and current not in normalized:
            value = normalized.pop(legacy)
            # A legacy "location" may be a plain room name
            if legacy == 'location' and not isinstance(value, dict):
                continue
            normalized[current] = value
    return normalized


def _identifier(data: Dict[str, Any], key: str) -> str:
    value = data.get(key, '')
    if value is None:
        return ''
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValueError(f"Field {key} must be a string")
    return str(value)


def decode(token_string: Any) -> DecodeResult:
    """
    Parse a token string back into a session descriptor.

    Args:
        token_string: Text delivered by the scanner or typed by the user

    Returns:
        DecodeResult: valid result with a descriptor, or a failure carrying
        a DecodeError kind
    """
    if isinstance(token_string, bytes):
        try:
            token_string = token_string.decode('utf-8')
        except UnicodeDecodeError:
            return DecodeResult.failure(DecodeError.MALFORMED, 'Invalid QR code format')

    if not isinstance(token_string, str) or not token_string.strip():
        return DecodeResult.failure(DecodeError.MALFORMED, 'Invalid QR code format')

    try:
        data = _load_json(token_string.strip())
    except (ValueError, RecursionError):
        return DecodeResult.failure(DecodeError.MALFORMED, 'Invalid QR code format')

    if not isinstance(data, dict):
        return DecodeResult.failure(DecodeError.MALFORMED, 'Invalid QR code format')

    if 'checksum' in data:
        received = data.pop('checksum')
        try:
            expected = _checksum(data)
        except (TypeError, ValueError):
            expected = None
        if received != expected:
            return DecodeResult.failure(DecodeError.MALFORMED, 'Invalid checksum')

    data = _apply_aliases(data)

    for required in REQUIRED_FIELDS:
        value = data.get(required)
        if value is None or value == '':
            return DecodeResult.failure(
                DecodeError.MISSING_FIELD,
                f'Missing required field: {required}',
                required
            )

    try:
        geofence = data.get('geofence')
        descriptor = SessionDescriptor(
            class_id=_identifier(data, 'classId'),
            class_name=_identifier(data, 'className'),
            issuer_id=_identifier(data, 'issuerId'),
            session_token=_identifier(data, 'sessionToken'),
            issued_at=parse_timestamp(data['issuedAt']) if data.get('issuedAt') is not None else None,
            expires_at=parse_timestamp(data['expiresAt']),
            geofence=Geofence.from_dict(geofence) if geofence is not None else None,
        )
    except (TypeError, ValueError) as e:
        logger.debug(f"Rejected malformed token: {str(e)}")
        return DecodeResult.failure(DecodeError.MALFORMED, str(e))

    return DecodeResult(valid=True, descriptor=descriptor)
