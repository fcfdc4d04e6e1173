"""
Webhook signature verification.

Signatures are hex HMAC-SHA256 digests of the exact request body bytes,
computed with the deployment's shared secret (WEBHOOK_SECRET). The body is
never re-serialized before signing or verifying, so key order and whitespace
in JSON bodies cannot cause spurious mismatches.

Accepted signature headers (first present wins):
  X-Webhook-Signature   <hex>
  X-Hub-Signature-256   sha256=<hex>   (GitHub style)
  X-Signature           <hex> or sha256=<hex>
  X-Signature-256       <hex> or sha256=<hex>

A legacy X-Webhook-Secret header carrying the raw secret is also accepted by
the router when no signature header is sent.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone
from typing import Mapping, Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = (
    "x-webhook-signature",
    "x-hub-signature-256",
    "x-signature",
    "x-signature-256",
)

SHARED_SECRET_HEADER = "x-webhook-secret"

_SHA256_PREFIX = "sha256="

# Tolerated clock skew for timestamps slightly ahead of the server clock
_FUTURE_SKEW_SECONDS = 30

# Epoch values above this are treated as milliseconds
_EPOCH_MS_THRESHOLD = 10_000_000_000


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def sign(payload: Union[str, bytes], secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``payload`` keyed with ``secret``."""
    return hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()


def strip_signature_prefix(signature: str) -> str:
    """'sha256=abc' -> 'abc'; bare hex passes through (trimmed, lower-cased)."""
    signature = signature.strip()
    if signature.lower().startswith(_SHA256_PREFIX):
        signature = signature[len(_SHA256_PREFIX):]
    return signature.strip().lower()


def timing_safe_equal(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two values in time independent of where they first differ.

    Unequal lengths return early; the length of a hex digest is public. For
    equal lengths every byte is XOR-accumulated before the result is read.
    """
    a_bytes = _to_bytes(a)
    b_bytes = _to_bytes(b)
    if len(a_bytes) != len(b_bytes):
        return False

    result = 0
    for x, y in zip(a_bytes, b_bytes):
        result |= x ^ y
    return result == 0


def verify(
    payload: Union[str, bytes],
    received_signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Return True if ``received_signature`` is the HMAC of ``payload``.

    A missing signature or secret is never valid.
    """
    if not received_signature or not secret:
        logger.warning("Missing signature or secret for webhook verification")
        return False

    expected = sign(payload, secret)
    return timing_safe_equal(expected, strip_signature_prefix(received_signature))


def extract_signature(headers: Mapping[str, str]) -> Optional[str]:
    """Return the bare hex signature from the first signature header present."""
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value and value.strip():
            return strip_signature_prefix(value)
    return None


def _parse_timestamp(ts: Union[str, int, float, datetime]) -> Optional[datetime]:
    """Epoch seconds, epoch milliseconds or ISO-8601 -> aware UTC datetime."""
    if isinstance(ts, datetime):
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)

    if isinstance(ts, bool):
        return None

    if isinstance(ts, str):
        text = ts.strip()
        if not text:
            return None
        try:
            ts = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    if isinstance(ts, (int, float)):
        seconds = ts / 1000 if ts > _EPOCH_MS_THRESHOLD else ts
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    return None


def verify_timestamp(
    ts: Union[str, int, float, datetime, None],
    max_age_minutes: float = 5,
    now: Optional[datetime] = None,
) -> bool:
    """
    Return True if ``ts`` is at most ``max_age_minutes`` old and not in the future.

    Only meaningful when the timestamp is part of the signed body; otherwise
    an attacker replaying a captured request can just change it.
    """
    if ts is None:
        return False

    parsed = _parse_timestamp(ts)
    if parsed is None:
        logger.warning(f"Unparsable webhook timestamp: {ts!r}")
        return False

    now = now or datetime.now(timezone.utc)
    age_seconds = (now - parsed).total_seconds()

    if age_seconds < -_FUTURE_SKEW_SECONDS:
        logger.warning(f"Webhook timestamp is in the future: {parsed.isoformat()}")
        return False
    if age_seconds > max_age_minutes * 60:
        logger.warning(f"Webhook timestamp too old: {parsed.isoformat()}")
        return False
    return True


def generate_secret(num_bytes: int = 32) -> str:
    """Return a random hex secret suitable for WEBHOOK_SECRET."""
    return secrets.token_hex(num_bytes)
