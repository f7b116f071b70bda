from __future__ import annotations

import os
import time

import jwt
from flask import current_app, has_app_context

ISSUER = "nemy"
ACCESS_TTL_SECONDS = 60 * 60 * 24 * 7


def _secret() -> str:
    if has_app_context():
        return current_app.config.get("SECRET_KEY") or "dev-secret"
    return os.getenv("SECRET_KEY") or "dev-secret"


def create_access_token(user_id: int, role: str = "", ttl_seconds: int = ACCESS_TTL_SECONDS) -> str:
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "sub": str(int(user_id)),
        "role": (role or "").strip().lower(),
        "iat": now,
        "exp": now + int(ttl_seconds),
    }
    return jwt.encode(claims, _secret(), algorithm="HS256")


def decode_token(token: str) -> dict | None:
    """Return the claims of a valid access token, or None for anything else."""
    try:
        return jwt.decode(token, _secret(), algorithms=["HS256"], issuer=ISSUER, options={"require": ["exp", "sub"]})
    except jwt.PyJWTError:
        return None


def get_bearer_token(auth_header: str) -> str | None:
    scheme, _, token = (auth_header or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
