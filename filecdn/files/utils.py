# filecdn/files/utils.py
from __future__ import annotations
import mimetypes
import re
from hashlib import sha256 as _sha256
from typing import Optional

_DISP_SAFE_RE = re.compile(r'[\r\n"]')  # strip controls and quotes
_NAME_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9.\-_]")
_UNDERSCORES_RE = re.compile(r"_+")

def sanitize_filename(name: str) -> str:
    if not name:
        return "file"
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNDERSCORES_RE.sub("_", _NAME_UNSAFE_RE.sub("_", name))[:255]
    return cleaned if cleaned.strip("._") else "file"

def file_extension(name: str) -> str:
    """Lower-cased extension including the dot, or "" when there is none."""
    base = (name or "").rsplit("/", 1)[-1]
    if "." not in base.strip("."):
        return ""
    return "." + base.rsplit(".", 1)[1].lower()

def _percent_encode(b: bytes) -> str:
    out = []
    for c in b:
        if (
            0x30 <= c <= 0x39 or  # 0-9
            0x41 <= c <= 0x5A or  # A-Z
            0x61 <= c <= 0x7A or  # a-z
            c in (0x2D, 0x2E, 0x5F, 0x7E)  # - . _ ~
        ):
            out.append(chr(c))
        else:
            out.append(f"%{c:02X}")
    return "".join(out)

def build_content_disposition(filename: str, attachment: bool) -> str:
    safe = _DISP_SAFE_RE.sub("", filename or "").strip() or "file"
    disp = "attachment" if attachment else "inline"
    filename_star = "UTF-8''" + _percent_encode(safe.encode("utf-8"))
    return f'{disp}; filename="{safe}"; filename*={filename_star}'

def guess_mime_from_name(name: str) -> Optional[str]:
    mt, _ = mimetypes.guess_type(name or "", strict=False)
    return mt

def compute_sha256(data: bytes) -> str:
    return _sha256(data).hexdigest()

def format_bytes(size: int, decimals: int = 2) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB", "PB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    text = f"{value:.{max(decimals, 0)}f}"
    if "." in text:
        # 1.50 -> "1.5", 2.00 -> "2"
        text = text.rstrip("0").rstrip(".")
    return f"{text} {units[i]}"
