"""
Client-side device code helper

Fetches the server's hardware device code and keeps it in a small JSON file
tagged with the derivation version. A stored code from another version, or a
client fingerprint code (DEV-), is regenerated instead of being reused.
"""
import json
import logging
import os
import platform
import time
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from device_fingerprint import (
    CLIENT_PREFIX, DEVICE_CODE_VERSION, ClientFingerprint, encode_client_fingerprint
)

logger = logging.getLogger(__name__)

DEVICE_FINGERPRINT_ENDPOINT = "/api/device-fingerprint"
REQUEST_TIMEOUT = 10


class DeviceCodeStore:
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else Path.home() / ".archive-manager" / "device_code.json"

    def load(self) -> Optional[str]:
        """Stored device code, or None when missing, unreadable or from another derivation version"""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read stored device code: {e}")
            return None

        saved_version = data.get("version")
        if saved_version != DEVICE_CODE_VERSION:
            logger.info(f"Device code version mismatch: {saved_version} -> {DEVICE_CODE_VERSION}, regenerating")
            return None
        return data.get("device_code") or None

    def save(self, device_code: str):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps({
                "device_code": device_code,
                "version": DEVICE_CODE_VERSION,
                "generated_at": int(time.time() * 1000),
            }, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to save device code: {e}")


def local_client_fingerprint() -> ClientFingerprint:
    """What a headless client can report about itself"""
    return ClientFingerprint(platform=platform.platform(), timezone="/".join(time.tzname))


def fetch_server_device_code(server_url: str) -> Dict[str, Any]:
    url = server_url.rstrip("/") + DEVICE_FINGERPRINT_ENDPOINT
    response = requests.get(url, timeout=REQUEST_TIMEOUT)
    response.raise_for_status()
    data = response.json()
    if not data.get("deviceCode"):
        raise ValueError("Server returned no device code")
    return data


def get_or_generate_device_code(server_url: Optional[str] = None,
                                store: Optional[DeviceCodeStore] = None,
                                fingerprint: Optional[ClientFingerprint] = None) -> str:
    """
    Device code to submit with login/activation.

    Prefers a stored server-derived code, then the server endpoint, and only
    when the server is unreachable falls back to the client fingerprint.
    """
    store = store or DeviceCodeStore()
    server_url = server_url or os.getenv("ARCHIVE_SERVER_URL", "http://localhost:8000")

    existing = store.load()
    if existing and not existing.startswith(f"{CLIENT_PREFIX}-"):
        return existing
    if existing:
        logger.info("Stored device code is a client fingerprint, retrying the server")

    try:
        device_code = fetch_server_device_code(server_url)["deviceCode"]
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.warning(f"Failed to get device code from server ({e}), falling back to client fingerprint")
        device_code = encode_client_fingerprint(fingerprint or local_client_fingerprint()).device_code

    store.save(device_code)
    return device_code
