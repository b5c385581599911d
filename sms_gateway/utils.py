"""
Utility functions for the SMS gateway.
"""

import hashlib
import hmac
import logging
import random
import time
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


def verify_api_key(provided: Optional[str], expected: str) -> bool:
    """
    Compare the X-API-Key header with the configured secret.

    Exact byte equality, case-sensitive, constant-time.

    Args:
        provided: Header value, None when the header is absent
        expected: Configured API_KEY

    Returns:
        True if the key matches, False otherwise
    """
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def now_millis() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def generate_message_id() -> str:
    """
    Generate a send correlation id: sms_<unixMillis>_<4 random digits>.

    Unique with overwhelming probability within one process run only.
    """
    return f"sms_{now_millis()}_{random.randint(1000, 9999)}"


def format_timestamp(millis: int) -> str:
    """Render a millisecond timestamp as local 'YYYY-MM-DD HH:MM:SS'."""
    return datetime.fromtimestamp(millis / 1000).strftime("%Y-%m-%d %H:%M:%S")
