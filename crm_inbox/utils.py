"""
Helpers shared by the inbox routes and the reconciliation engine.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Check the X-Signature header of a provider webhook.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded HMAC-SHA256 of the body
        secret: WEBHOOK_SECRET

    Returns:
        True if the signature matches, False otherwise
    """
    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"Webhook signature {'valid' if is_valid else 'invalid'} for {len(body)} byte body")
    return is_valid


def utc_now_iso() -> str:
    """Current server time as ISO-8601 UTC with millisecond precision and Z suffix."""
    return to_iso(datetime.now(timezone.utc))


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings with or without a Z suffix or offset, and
    datetime objects. Naive values are taken as UTC. Returns None for
    anything unparseable, including the literal string "undefined" some
    legacy history rows carry.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text or text in ("undefined", "null", "None"):
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(moment: datetime) -> int:
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def to_iso(moment: datetime) -> str:
    """Millisecond ISO-8601 with Z suffix, the form legacy history rows use."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
