# filecdn/security/jwt.py
from __future__ import annotations
import time
from typing import Dict, Any, Optional
import jwt  # PyJWT

from filecdn.config import settings

ALGORITHM = "HS256"
DEFAULT_ADMIN_TTL = 7 * 86400


def _secret() -> str:
    if not settings.jwt_secret:
        raise RuntimeError("JWT_SECRET is required (set env JWT_SECRET)")
    return settings.jwt_secret


def _issuer() -> str:
    return settings.jwt_issuer or "filecdn"


def _resolve_ttl(ttl_seconds: Optional[int]) -> int:
    for candidate in (ttl_seconds, settings.admin_jwt_ttl_seconds):
        try:
            if candidate is not None and int(candidate) > 0:
                return int(candidate)
        except (TypeError, ValueError):
            continue
    return DEFAULT_ADMIN_TTL


def issue_admin_token(sub: str, ttl_seconds: Optional[int] = None, role: str = "admin") -> str:
    """Mint a bearer token for the admin API.

    Args:
        sub: who the token is for (operator email, "ops", ...).
        ttl_seconds: lifetime override; ADMIN_JWT_TTL_SECONDS, then 7 days otherwise.
        role: claim checked by `admin_guard`; anything but "admin" is rejected there.
    """
    now = int(time.time())
    payload: Dict[str, Any] = {
        "iss": _issuer(),
        "sub": sub,
        "role": role,
        "iat": now,
        "exp": now + _resolve_ttl(ttl_seconds),
    }
    return jwt.encode(payload, _secret(), algorithm=ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    """Decode and verify signature, expiry and issuer. Raises jwt.PyJWTError."""
    return jwt.decode(
        token,
        _secret(),
        algorithms=[ALGORITHM],
        issuer=_issuer(),
        options={"require": ["exp", "iat", "iss"]},
    )
