from __future__ import annotations

import hashlib
import hmac
import os
import time

DEFAULT_TOLERANCE_SECONDS = 300


def _webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _parse_header(header: str) -> tuple[int | None, list[str]]:
    timestamp = None
    signatures = []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == "v1" and value:
            signatures.append(value.strip().lower())
    return timestamp, signatures


def compute_signature(raw: bytes, timestamp: int, secret: str | None = None) -> str:
    key = (secret if secret is not None else _webhook_secret()).encode("utf-8")
    signed = f"{int(timestamp)}.".encode("utf-8") + (raw or b"")
    return hmac.new(key, signed, hashlib.sha256).hexdigest()


def verify_signature(
    raw: bytes,
    header: str | None,
    secret: str | None = None,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: int | None = None,
) -> bool:
    """Check a ``Stripe-Signature`` header (``t=...,v1=...``) against the raw body."""
    key = secret if secret is not None else _webhook_secret()
    if not key or not header:
        return False
    timestamp, signatures = _parse_header(header)
    if timestamp is None or not signatures:
        return False
    current = int(now if now is not None else time.time())
    if tolerance and abs(current - timestamp) > int(tolerance):
        return False
    expected = compute_signature(raw, timestamp, key)
    return any(hmac.compare_digest(expected, sig) for sig in signatures)
