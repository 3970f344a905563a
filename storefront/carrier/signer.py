"""
Carrier request signing.

Every call to the carrier carries RT-AppKey, RT-Timestamp and RT-Sign
headers. The signature covers the timestamp, so it must be recomputed for
every request.
"""

import hashlib
import time
from typing import Dict, Optional

from .base import InfrastructureNotConfigured


def sign(app_key: str, app_secret: str, timestamp: str) -> str:
    """SHA-256 of key + secret + timestamp, lowercase hex."""
    if not app_key or not app_secret:
        raise InfrastructureNotConfigured("Carrier AppKey/AppSecret are not configured")
    digest = hashlib.sha256(f"{app_key}{app_secret}{timestamp}".encode("utf-8"))
    return digest.hexdigest()


def signed_headers(app_key: str, app_secret: str, now: Optional[float] = None) -> Dict[str, str]:
    """Build fresh auth headers. `now` is epoch seconds (defaults to the current time)."""
    timestamp = str(int((time.time() if now is None else now) * 1000))
    return {
        "RT-AppKey": app_key,
        "RT-Timestamp": timestamp,
        "RT-Sign": sign(app_key, app_secret, timestamp),
    }
