from __future__ import annotations

import hashlib
import hmac
import re

# -----------------------------------------------------------------------------
# Report signing
#
# Signature = hex(HMAC-SHA256(secret, timestamp + "\n" + body)).
# The timestamp is decimal Unix seconds and travels in X-Probe-Timestamp so the
# collector can reject stale or replayed reports before checking the MAC.
# -----------------------------------------------------------------------------

TIMESTAMP_HEADER = "X-Probe-Timestamp"
SIGNATURE_HEADER = "X-Probe-Signature"

DEFAULT_MAX_CLOCK_SKEW_S = 5 * 60

_TIMESTAMP_RE = re.compile(r"^[0-9]{1,20}$")
_SIGNATURE_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def sign(secret: bytes, timestamp: str, body: bytes) -> str:
    mac = hmac.new(secret, digestmod=hashlib.sha256)
    mac.update(timestamp.encode("ascii"))
    mac.update(b"\n")
    mac.update(body)
    return mac.hexdigest()


def extract_timestamp(header: str | None) -> str | None:
    if not header:
        return None
    trimmed = header.strip()
    if _TIMESTAMP_RE.match(trimmed):
        return trimmed
    return None


def extract_signature(header: str | None) -> str | None:
    """Normalize a signature header to 64 lowercase hex chars (optional 0x)."""

    if not header:
        return None
    trimmed = header.strip()
    if trimmed[:2].lower() == "0x":
        trimmed = trimmed[2:]
    if _SIGNATURE_RE.match(trimmed):
        return trimmed.lower()
    return None


def timestamp_within_skew(timestamp: str, *, now: float, max_skew_s: int = DEFAULT_MAX_CLOCK_SKEW_S) -> bool:
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    return abs(int(now) - ts) <= max_skew_s


def verify_signature(
    secret: bytes | str | None,
    body: bytes,
    signature: str | None,
    timestamp: str | None,
) -> bool:
    if not secret:
        return False
    key = secret.encode("utf-8") if isinstance(secret, str) else secret

    ts = extract_timestamp(timestamp)
    if ts is None:
        return False

    sig = extract_signature(signature)
    if sig is None:
        return False

    expected = sign(key, ts, body)
    return hmac.compare_digest(expected, sig)
