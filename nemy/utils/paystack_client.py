from __future__ import annotations

import hashlib
import hmac
import os


def _webhook_secret() -> str:
    return (os.getenv("PAYSTACK_WEBHOOK_SECRET") or os.getenv("PAYSTACK_SECRET_KEY") or "").strip()


def compute_signature(raw: bytes, secret: str | None = None) -> str:
    key = (secret if secret is not None else _webhook_secret()).encode("utf-8")
    return hmac.new(key, raw or b"", hashlib.sha512).hexdigest()


def verify_signature(raw: bytes, signature: str | None, secret: str | None = None) -> bool:
    if not signature:
        return False
    key = secret if secret is not None else _webhook_secret()
    if not key:
        return False
    expected = compute_signature(raw, key)
    return hmac.compare_digest(expected, signature.strip().lower())
