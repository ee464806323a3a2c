from __future__ import annotations
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from .config import settings


def envelope(data: Any = None, error: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    """`{author, email, success, data|error}`; success is implied by the absence of `error`."""
    body: Dict[str, Any] = {
        "author": settings.api_author,
        "email": settings.api_email,
        "success": error is None,
    }
    if error is None:
        body["data"] = data
    else:
        body["error"] = error
    body.update(extra)
    return body


def error_response(status_code: int, error: str, headers: Optional[Dict[str, str]] = None, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(error=error, **extra), headers=headers)
