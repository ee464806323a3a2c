from __future__ import annotations
"""
Request classification: client IP, input predicates, attack heuristics and
per-(ip, endpoint) rate limiting. State (limiter + blocklist) is injected so a
Redis-backed deployment shares it across processes.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from fastapi import Request

from .blocklist import Blocklist
from .rate_limit import RateLimiter, RateLimitResult, rate_limit_key

log = logging.getLogger(__name__)

SECURITY_HEADERS: Dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Content-Security-Policy": (
        "default-src 'self'; script-src 'self' 'unsafe-inline' 'unsafe-eval'; "
        "style-src 'self' 'unsafe-inline'; img-src 'self' data: https:; font-src 'self' data:; "
        "connect-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self';"
    ),
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
}

SUSPICIOUS_PATTERNS = tuple(re.compile(p) for p in (
    r"\.\./",
    r"/etc/passwd",
    r"/bin/sh",
    r"(?i)union.*select",
    r"(?i)insert.*into",
    r"(?i)drop.*table",
    r"(?i)script.*>",
    r"(?i)onload=",
    r"(?i)onerror=",
    r"(?i)javascript:",
    r"(?i)data:",
    r"(?i)vbscript:",
))

_STRIP_RE = (
    (re.compile(r"[<>]"), ""),
    (re.compile(r"javascript:", re.IGNORECASE), ""),
    (re.compile(r"data:", re.IGNORECASE), ""),
    (re.compile(r"vbscript:", re.IGNORECASE), ""),
    (re.compile(r"on\w+=", re.IGNORECASE), ""),
)

_FILENAME_RE = re.compile(r"^[a-zA-Z0-9._\-\s]+$")
_ID_RE = re.compile(r"^[a-zA-Z0-9]{8,32}$")

_CLI_TOOLS = ("curl", "wget")
_BROWSER_RE = re.compile(
    r"(Firefox|FxiOS|Chrome|Chromium|CriOS|Safari|Edg[eAi]?|OPR|Opera|MSIE|Trident|"
    r"SamsungBrowser|UCBrowser|YaBrowser|Vivaldi|Brave)/?\s?[\d.]*"
)
_ALLOWED_CONTENT_TYPES = ("application/json", "multipart/form-data", "application/x-www-form-urlencoded")

AUTO_BLOCK_INDICATORS = {"BLOCKED_IP", "PATH_TRAVERSAL"}


def client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def sanitize(value: str) -> str:
    if not isinstance(value, str):
        return ""
    out = value
    for pattern, repl in _STRIP_RE:
        out = pattern.sub(repl, out)
    out = out.strip()
    for pattern in SUSPICIOUS_PATTERNS:
        out = pattern.sub("", out)
    return out


def _looks_suspicious(value: str) -> bool:
    return any(p.search(value) for p in SUSPICIOUS_PATTERNS)


def validate_input(value: Any, kind: str) -> bool:
    """Per-field predicates: kind is one of filename | url | text | id."""
    if not value or not isinstance(value, str):
        return False
    cleaned = sanitize(value)

    if kind == "filename":
        return len(cleaned) <= 255 and not _looks_suspicious(value) and bool(_FILENAME_RE.match(cleaned))
    if kind == "url":
        try:
            parsed = urlparse(cleaned)
        except ValueError:
            return False
        host = parsed.hostname or ""
        return (
            parsed.scheme in ("http", "https")
            and 0 < len(host) <= 253
            and not _looks_suspicious(value)
        )
    if kind == "id":
        return bool(_ID_RE.match(cleaned))
    if kind == "text":
        return len(cleaned) <= 1000 and not _looks_suspicious(value)
    return False


def browser_name(user_agent: str) -> Optional[str]:
    m = _BROWSER_RE.search(user_agent or "")
    return m.group(1) if m else None


@dataclass
class AttackReport:
    is_attack: bool
    indicators: List[str] = field(default_factory=list)
    severity: str = "LOW"


class SecurityGate:
    def __init__(self, limiter: RateLimiter, blocklist: Blocklist, redis=None) -> None:
        self.limiter = limiter
        self.blocklist = blocklist
        self.redis = redis

    async def check_rate_limit(self, ip: str, endpoint: str = "global") -> RateLimitResult:
        return await self.limiter.hit(rate_limit_key(ip, endpoint))

    async def is_blocked(self, ip: str) -> bool:
        return await self.blocklist.is_blocked(ip)

    async def block_ip(self, ip: str, reason: str, duration: Optional[int] = None) -> None:
        entry = await self.blocklist.block(ip, reason, duration)
        await self.log_security_event("IP_BLOCKED", {"ip": ip, "reason": reason, "expires_at": entry.expires_at})

    async def detect_attack(self, request: Request) -> AttackReport:
        ip = client_ip(request)
        user_agent = request.headers.get("user-agent") or ""
        indicators: List[str] = []

        if await self.is_blocked(ip):
            indicators.append("BLOCKED_IP")

        ua_lower = user_agent.lower()
        if any(tool in ua_lower for tool in _CLI_TOOLS):
            indicators.append("CLI_TOOL")

        if not browser_name(user_agent):
            indicators.append("UNKNOWN_BROWSER")

        referer = request.headers.get("referer")
        if referer and not validate_input(referer, "url"):
            indicators.append("SUSPICIOUS_REFERER")

        target = request.url.path + (f"?{request.url.query}" if request.url.query else "")
        if ".." in target or "//" in target:
            indicators.append("PATH_TRAVERSAL")

        content_type = request.headers.get("content-type")
        if content_type and not any(t in content_type for t in _ALLOWED_CONTENT_TYPES):
            indicators.append("UNSUPPORTED_CONTENT_TYPE")

        if not indicators:
            return AttackReport(is_attack=False)

        await self.log_security_event("ATTACK_DETECTED", {
            "ip": ip,
            "userAgent": user_agent,
            "attackIndicators": indicators,
            "url": target,
        })
        if AUTO_BLOCK_INDICATORS.intersection(indicators):
            await self.block_ip(ip, f"Attack detected: {', '.join(indicators)}")

        severity = "HIGH" if "BLOCKED_IP" in indicators else "MEDIUM"
        return AttackReport(is_attack=True, indicators=indicators, severity=severity)

    async def log_security_event(self, event: str, data: Dict[str, Any]) -> None:
        log.warning("[SECURITY] %s: %s", event, data)
        if self.redis is None:
            return
        entry = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": json.dumps(data, default=str),
        }
        try:
            await self.redis.lpush("security_logs", json.dumps(entry))
            await self.redis.ltrim("security_logs", 0, 999)
        except Exception as e:
            log.error("Failed to persist security event %s: %s", event, e)
