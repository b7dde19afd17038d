"""
Utility functions for the social sync service.
"""

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify an HMAC-SHA256 webhook signature.

    Args:
        body: Raw request body bytes
        signature: Header value, ``sha256=<hex>`` (a bare hex digest is accepted too)
        secret: Shared signing secret (the platform app secret)

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False

    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def new_id(prefix: str) -> str:
    """Generate a local identifier such as ``conv_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"


def hash_state(state: str) -> str:
    """Hash an OAuth state token so only its digest is stored."""
    return hashlib.sha256(state.encode("utf-8")).hexdigest()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse a platform timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (``Z`` or ``+0000`` offsets), epoch
    milliseconds, and datetimes. Returns None for missing or invalid values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized.endswith("Z"):
            normalized = normalized[:-1] + "+00:00"
        # Graph API uses +0000 without a colon
        elif len(normalized) > 5 and normalized[-5] in "+-" and normalized[-4:].isdigit():
            normalized = normalized[:-2] + ":" + normalized[-2:]
        try:
            return as_utc(datetime.fromisoformat(normalized))
        except ValueError:
            return None
    return None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as ISO-8601 UTC with a Z suffix."""
    value = as_utc(value)
    if value is None:
        return None
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
