"""
Utility functions shared by the webhook endpoint and the reconcilers.
"""

import hmac
import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

MAX_TEXT_LENGTH = 4096

_PHONE_RE = re.compile(r"^\d{1,15}$")

# C0/C1 control characters except tab, newline and carriage return
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify the X-Hub-Signature-256 header sent by Meta.

    Args:
        body: Raw request body bytes
        signature: Header value in the form "sha256=<hex digest>"
        secret: WEBHOOK_SECRET (the app secret)

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        logger.info("HMAC signature verification: missing signature or secret")
        return False

    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:15]}...")

    expected_signature = SIGNATURE_PREFIX + hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature.encode("utf-8"), signature.encode("utf-8"))
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def is_valid_phone_number(phone_number: object) -> bool:
    """E.164 without the plus sign: digits only, 1 to 15 characters."""
    return isinstance(phone_number, str) and _PHONE_RE.match(phone_number) is not None


def sanitize_input(value: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Strip control characters, trim whitespace and cap the length."""
    cleaned = _CONTROL_CHARS_RE.sub("", value).strip()
    if len(cleaned) > max_length:
        logger.warning(f"Text truncated to {max_length} characters")
        cleaned = cleaned[:max_length]
    return cleaned


def mask_phone(phone_number: Optional[str]) -> Optional[str]:
    if not phone_number:
        return phone_number
    return phone_number[:5] + "***"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def provider_timestamp_to_iso(timestamp: Union[str, int, float, None]) -> str:
    """
    Convert a Cloud API epoch timestamp ("1700000000") into ISO-8601 UTC.

    Falls back to the current server time when the event carries no timestamp.
    """
    if timestamp is None or timestamp == "":
        return utc_now_iso()
    return datetime.fromtimestamp(int(float(timestamp)), tz=timezone.utc).strftime(ISO_FORMAT)
