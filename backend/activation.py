"""
Activation codes binding a device code to a license duration.

Code layout (15 bytes, base32, grouped by 4):
    version (1) | duration days, big endian (2) | HMAC-SHA256 tag, truncated (12)

The tag covers the device code and the duration, so a code issued for one
device never verifies for another and the duration cannot be edited.
Verification needs only the device code and the server secret.
"""
import base64
import binascii
import hashlib
import hmac
import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from config import LICENSE_MIN_DAYS, LICENSE_MAX_DAYS

logger = logging.getLogger(__name__)

CODE_VERSION = 1
TAG_LENGTH = 12
PAYLOAD_LENGTH = 1 + 2 + TAG_LENGTH
GROUP_SIZE = 4


@dataclass
class ActivationResult:
    valid: bool
    duration_days: Optional[int] = None


def normalize_code(code: str) -> str:
    """Strip separators and whitespace, uppercase"""
    return "".join(ch for ch in (code or "") if ch not in "- \t\r\n").upper()


def group_code(raw: str) -> str:
    return "-".join(raw[i:i + GROUP_SIZE] for i in range(0, len(raw), GROUP_SIZE))


def expire_time_for(duration_days: int, now: datetime) -> datetime:
    return now + timedelta(days=duration_days)


class ActivationCodec:
    def __init__(self, secret: Union[str, bytes], min_days: int = LICENSE_MIN_DAYS, max_days: int = LICENSE_MAX_DAYS):
        if not secret:
            raise ValueError("Activation secret must not be empty")
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self.min_days = min_days
        self.max_days = max_days

    def _tag(self, version: int, device_code: str, duration_days: int) -> bytes:
        message = f"v{version}|{device_code}|{duration_days}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).digest()[:TAG_LENGTH]

    def issue(self, device_code: str, duration_days: int) -> str:
        """Compute the activation code for a device and duration (deterministic)"""
        if not device_code:
            raise ValueError("device_code is required")
        if not isinstance(duration_days, int) or not self.min_days <= duration_days <= self.max_days:
            raise ValueError(f"duration_days must be between {self.min_days} and {self.max_days}")

        payload = struct.pack(">BH", CODE_VERSION, duration_days) + self._tag(CODE_VERSION, device_code, duration_days)
        return group_code(base64.b32encode(payload).decode("ascii"))

    def verify(self, device_code: str, auth_code: str) -> ActivationResult:
        """Check that auth_code was issued for device_code. Malformed input is simply invalid."""
        raw = normalize_code(auth_code)
        if not device_code or not raw:
            return ActivationResult(valid=False)

        try:
            payload = base64.b32decode(raw)
        except (binascii.Error, ValueError):
            return ActivationResult(valid=False)

        if len(payload) != PAYLOAD_LENGTH:
            return ActivationResult(valid=False)

        version, duration_days = struct.unpack(">BH", payload[:3])
        if version != CODE_VERSION or not self.min_days <= duration_days <= self.max_days:
            return ActivationResult(valid=False)

        expected = self._tag(version, device_code, duration_days)
        if not hmac.compare_digest(expected, payload[3:]):
            logger.debug(f"Activation code tag mismatch for device {device_code}")
            return ActivationResult(valid=False)

        return ActivationResult(valid=True, duration_days=duration_days)
