"""
Session Generator Module - QR Check-in Attendance System

This module opens attendance sessions for a class and renders them as QR
codes. A session is a time-boxed, optionally location-bound descriptor with
a fresh random token; regenerating a session always issues a new token and
leaves the previous descriptor untouched.

Features:
- Time-boxed session generation with cryptographically strong tokens
- Optional geofence binding
- Session regeneration
- Countdown helpers computed from the clock on every call
- QR code image rendering with optional class information overlay
"""

import base64
import io
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import qrcode
from PIL import Image, ImageDraw, ImageFont

from checkin.modules.attendance_store import AttendanceStore
from checkin.modules.token_codec import Geofence, SessionDescriptor, encode, utc_now

# Session states
STATE_IDLE = 'idle'
STATE_ACTIVE = 'active'
STATE_EXPIRED = 'expired'

# Countdown status thresholds, in seconds
EXPIRING_SOON_SECONDS = 300
ABOUT_TO_EXPIRE_SECONDS = 60

# Longest attendance window a session may be opened with
MAX_WINDOW_MINUTES = 24 * 60

# Sentinel for "keep the previous geofence" in regenerate()
_KEEP = object()


def time_remaining(expires_at: datetime, now: datetime) -> int:
    """Whole seconds until expiry, never negative."""
    remaining = (expires_at - now).total_seconds()
    return max(0, int(remaining))


def session_state(descriptor: Optional[SessionDescriptor], now: datetime) -> str:
    if descriptor is None:
        return STATE_IDLE
    if now >= descriptor.expires_at:
        return STATE_EXPIRED
    return STATE_ACTIVE


def format_time_remaining(seconds: int) -> str:
    """Format a countdown as m:ss."""
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes}:{secs:02d}"


def countdown_status(seconds: int) -> str:
    if seconds <= 0:
        return 'expired'
    if seconds > EXPIRING_SOON_SECONDS:
        return 'active'
    if seconds > ABOUT_TO_EXPIRE_SECONDS:
        return 'expiring_soon'
    return 'about_to_expire'


class SessionGenerator:
    """
    Issues attendance sessions and renders their QR codes.
    Keeps no countdown state: remaining time is recomputed from the clock
    each time it is asked for.
    """

    def __init__(self, store: Optional[AttendanceStore] = None,
                 token_bytes: int = 16,
                 default_window_minutes: float = 30,
                 clock: Optional[Callable[[], datetime]] = None,
                 qr_settings: Optional[Dict[str, Any]] = None):
        """
        Initialize the session generator.

        Args:
            store (AttendanceStore): Where issued sessions are saved, if anywhere
            token_bytes (int): Random bytes per session token (at least 10)
            default_window_minutes (float): Window used when none is given
            clock (callable): Returns the current aware UTC datetime
            qr_settings (dict): Overrides for the QR image settings
        """
        if token_bytes < 10:
            raise ValueError("token_bytes must be at least 10 (80 bits)")

        self.logger = logging.getLogger(__name__)
        self.store = store
        self.token_bytes = token_bytes
        self.default_window_minutes = default_window_minutes
        self.clock = clock or utc_now

        self.qr_settings = {
            'version': 1,
            'error_correction': qrcode.constants.ERROR_CORRECT_M,
            'box_size': 10,
            'border': 4,
            'fill_color': 'black',
            'back_color': 'white'
        }
        if qr_settings:
            self.qr_settings.update(qr_settings)

    def _new_token(self) -> str:
        return secrets.token_urlsafe(self.token_bytes)

    def generate(self, class_id: str, issuer_id: str,
                 window_minutes: Optional[float] = None,
                 geofence: Optional[Geofence] = None,
                 class_name: str = '',
                 now: Optional[datetime] = None) -> SessionDescriptor:
        """
        Open a new attendance session.

        Args:
            class_id (str): Class the session belongs to
            issuer_id (str): Teacher or admin opening the session
            window_minutes (float): Length of the attendance window
            geofence (Geofence): Optional location requirement
            class_name (str): Display name of the class
            now (datetime): Issue time, defaults to the clock

        Returns:
            SessionDescriptor: The new session

        Raises:
            ValueError: on empty identifiers or a window outside (0, MAX_WINDOW_MINUTES]
        """
        if not class_id:
            raise ValueError("class_id is required")
        if not issuer_id:
            raise ValueError("issuer_id is required")

        if window_minutes is None:
            window_minutes = self.default_window_minutes
        if isinstance(window_minutes, bool) or not isinstance(window_minutes, (int, float)) \
                or not 0 < window_minutes <= MAX_WINDOW_MINUTES:
            raise ValueError(
                f"window_minutes must be a positive number up to {MAX_WINDOW_MINUTES}, got {window_minutes!r}"
            )

        issued_at = now or self.clock()
        try:
            expires_at = issued_at + timedelta(minutes=window_minutes)
        except OverflowError as e:
            raise ValueError(f"window_minutes {window_minutes!r} runs past the end of the calendar") from e

        descriptor = SessionDescriptor(
            class_id=str(class_id),
            class_name=class_name or '',
            issuer_id=str(issuer_id),
            session_token=self._new_token(),
            issued_at=issued_at,
            expires_at=expires_at,
            geofence=geofence
        )

        if self.store is not None:
            self.store.save_session(descriptor)

        self.logger.info(
            f"Attendance session opened for class {descriptor.class_id} by {descriptor.issuer_id}, "
            f"expires {descriptor.expires_at.isoformat()}"
        )
        return descriptor

    def regenerate(self, previous: SessionDescriptor,
                   window_minutes: Optional[float] = None,
                   geofence=_KEEP,
                   now: Optional[datetime] = None) -> SessionDescriptor:
        """
        Issue a replacement session for the same class.

        The previous descriptor is left as it is; its token keeps working
        until its own expiry.

        Args:
            previous (SessionDescriptor): Session being replaced
            window_minutes (float): New window length, defaults to the previous one
            geofence (Geofence): New geofence; omit to keep the previous one, pass None to drop it
            now (datetime): Issue time, defaults to the clock

        Returns:
            SessionDescriptor: The new session
        """
        if window_minutes is None:
            if previous.issued_at is not None:
                window_minutes = (previous.expires_at - previous.issued_at).total_seconds() / 60
            else:
                window_minutes = self.default_window_minutes

        if geofence is _KEEP:
            geofence = previous.geofence

        descriptor = self.generate(
            previous.class_id,
            previous.issuer_id,
            window_minutes=window_minutes,
            geofence=geofence,
            class_name=previous.class_name,
            now=now
        )
        self.logger.info(f"Session for class {previous.class_id} regenerated")
        return descriptor

    def time_remaining(self, descriptor: SessionDescriptor, now: Optional[datetime] = None) -> int:
        return time_remaining(descriptor.expires_at, now or self.clock())

    def session_state(self, descriptor: Optional[SessionDescriptor], now: Optional[datetime] = None) -> str:
        return session_state(descriptor, now or self.clock())

    def can_regenerate(self, descriptor: Optional[SessionDescriptor], now: Optional[datetime] = None) -> bool:
        """True when there is no running session or it is in its last minute."""
        if descriptor is None:
            return True
        return self.time_remaining(descriptor, now) <= ABOUT_TO_EXPIRE_SECONDS

    def countdown(self, descriptor: SessionDescriptor, now: Optional[datetime] = None) -> Dict[str, Any]:
        seconds = self.time_remaining(descriptor, now)
        return {
            'seconds': seconds,
            'display': format_time_remaining(seconds),
            'status': countdown_status(seconds)
        }

    def active_session(self, class_id: str, now: Optional[datetime] = None) -> Optional[SessionDescriptor]:
        """Most recent unexpired session stored for a class."""
        if self.store is None:
            return None

        now = now or self.clock()
        sessions: List[SessionDescriptor] = self.store.list_sessions(class_id)
        active = [s for s in sessions if session_state(s, now) == STATE_ACTIVE]
        if not active:
            return None
        return max(active, key=lambda s: s.issued_at or s.expires_at)

    def render_qr_code(self, descriptor: SessionDescriptor,
                       with_info: bool = False,
                       wrap_base64: bool = True) -> Dict[str, Any]:
        """
        Render a session as a QR code image.

        Args:
            descriptor (SessionDescriptor): Session to render
            with_info (bool): Print the class name and expiry below the code
            wrap_base64 (bool): Base64-wrap the token inside the code

        Returns:
            dict: Token, base64 PNG image and file name
        """
        token = encode(descriptor, wrap_base64=wrap_base64)

        qr = qrcode.QRCode(
            version=self.qr_settings['version'],
            error_correction=self.qr_settings['error_correction'],
            box_size=self.qr_settings['box_size'],
            border=self.qr_settings['border']
        )
        qr.add_data(token)
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=self.qr_settings['fill_color'],
            back_color=self.qr_settings['back_color']
        ).convert('RGB')

        if with_info:
            img = self._add_class_info_overlay(img, descriptor)

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        img_base64 = base64.b64encode(buffer.getvalue()).decode()

        return {
            'success': True,
            'token': token,
            'image_base64': img_base64,
            'image_size': img.size,
            'filename': f"{descriptor.class_id}_QR_{descriptor.expires_at.strftime('%Y-%m-%d')}.png",
            'expires_at': descriptor.expires_at.isoformat()
        }

    def _add_class_info_overlay(self, qr_img: Image.Image, descriptor: SessionDescriptor) -> Image.Image:
        """
        Add class name and expiry text below a QR code image.

        Args:
            qr_img (Image.Image): QR code image
            descriptor (SessionDescriptor): Session shown in the code

        Returns:
            Image.Image: QR code with text area
        """
        original_size = qr_img.size
        new_img = Image.new('RGB', (original_size[0], original_size[1] + 60), 'white')
        new_img.paste(qr_img, (0, 0))

        draw = ImageDraw.Draw(new_img)
        try:
            font = ImageFont.truetype("arial.ttf", 14)
        except (IOError, OSError):
            font = ImageFont.load_default()

        lines = [
            descriptor.class_name or descriptor.class_id,
            f"Valid until {descriptor.expires_at.strftime('%H:%M UTC')}"
        ]

        text_y = original_size[1] + 8
        for line in lines:
            bbox = draw.textbbox((0, 0), line, font=font)
            width = bbox[2] - bbox[0]
            draw.text(((new_img.size[0] - width) // 2, text_y), line, fill='black', font=font)
            text_y += 22

        return new_img
