from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .jwt import verify_token
from .gate import SecurityGate, client_ip
from .blocklist import Blocklist
from .rate_limit import RedisWindowLimiter, WindowLimiter
from filecdn.config import settings
from filecdn.errors import AuthError, RateLimited, SecurityError
from filecdn.services.notifications import Notifier, fire_and_forget, get_notifier

bearer_scheme = HTTPBearer(auto_error=False)

_gate: Optional[SecurityGate] = None


def build_security_gate(redis=None) -> SecurityGate:
    if redis is not None:
        limiter = RedisWindowLimiter(redis, settings.api_rate_limit, settings.api_rate_window)
    else:
        limiter = WindowLimiter(settings.api_rate_limit, settings.api_rate_window)
    blocklist = Blocklist(
        redis=redis,
        static_ips=settings.static_blacklist,
        max_entries=settings.blocklist_max_entries,
        default_duration=settings.block_duration_seconds,
    )
    return SecurityGate(limiter=limiter, blocklist=blocklist, redis=redis)


def init_security_gate(redis=None) -> SecurityGate:
    global _gate
    _gate = build_security_gate(redis)
    return _gate


def get_security_gate() -> SecurityGate:
    """Process-wide gate; falls back to an in-memory one if startup didn't build it."""
    global _gate
    if _gate is None:
        _gate = build_security_gate()
    return _gate


@dataclass
class RequestContext:
    sub: str
    role: str
    raw: Dict[str, Any]


async def auth_admin(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> RequestContext:
    if creds is None or creds.scheme.lower() != "bearer":
        raise AuthError("Authentication required", headers={"WWW-Authenticate": "Bearer"})
    try:
        payload = verify_token(creds.credentials)
    except jwt.PyJWTError as e:
        # ExpiredSignatureError etc.
        raise AuthError(f"Invalid token: {type(e).__name__}")
    return RequestContext(
        sub=str(payload.get("sub") or "unknown"),
        role=str(payload.get("role") or ""),
        raw=payload,
    )


async def admin_guard(ctx: RequestContext = Depends(auth_admin)) -> RequestContext:
    if ctx.role != "admin":
        raise AuthError("Admin only", status_code=403)
    return ctx


class RouteGuard:
    """
    Per-endpoint gate: blocked IP / attack heuristics, then the rate budget for
    (ip, endpoint). Resolves to the client IP so handlers don't recompute it.
    """

    def __init__(self, endpoint: str, detect_attacks: bool = False) -> None:
        self.endpoint = endpoint
        self.detect_attacks = detect_attacks

    async def __call__(
        self,
        request: Request,
        gate: SecurityGate = Depends(get_security_gate),
        notifier: Notifier = Depends(get_notifier),
    ) -> str:
        ip = client_ip(request)

        if self.detect_attacks:
            report = await gate.detect_attack(request)
            if report.is_attack:
                fire_and_forget(notifier.send_security_alert(
                    ip=ip,
                    endpoint=self.endpoint,
                    indicators=report.indicators,
                    severity=report.severity,
                ))
                raise SecurityError()
        elif await gate.is_blocked(ip):
            raise SecurityError("IP address is blocked")

        result = await gate.check_rate_limit(ip, self.endpoint)
        if not result.allowed:
            raise RateLimited(result.retry_after)
        return ip
