from __future__ import annotations
"""
Error taxonomy for the public API.

Every class is an HTTPException so handlers can simply `raise`; main.py renders
them into the standard JSON envelope, keeping any headers (e.g. Retry-After).
"""

from typing import Dict, Optional

from fastapi import HTTPException


class ValidationError(HTTPException):
    """Bad input shape, size or type."""

    def __init__(self, detail: str, status_code: int = 400) -> None:
        super().__init__(status_code=status_code, detail=detail)


class SecurityError(HTTPException):
    """Blocked IP or detected attack."""

    def __init__(self, detail: str = "Security violation detected") -> None:
        super().__init__(status_code=403, detail=detail)


class RateLimited(HTTPException):
    def __init__(self, retry_after: int, detail: Optional[str] = None) -> None:
        retry_after = max(1, int(retry_after))
        super().__init__(
            status_code=429,
            detail=detail or f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class NotFound(HTTPException):
    def __init__(self, detail: str = "File not found") -> None:
        super().__init__(status_code=404, detail=detail)


class AuthError(HTTPException):
    """401 when credentials are missing or invalid, 403 when they lack the role."""

    def __init__(self, detail: str, status_code: int = 401, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class BackendError(HTTPException):
    """A storage provider or metadata database call failed."""

    def __init__(self, detail: str, provider: Optional[str] = None) -> None:
        super().__init__(status_code=502, detail=detail)
        self.provider = provider
