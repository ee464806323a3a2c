# filecdn/files/validator.py
from __future__ import annotations
"""
Upload content validation.

Order of checks (first failure wins):
  size -> deny-listed extension -> sniffed type in allow-list
  -> declared/sniffed agreement -> text patterns in the first KiB
  -> executable signatures vs. extension.

Sniffing is libmagic based. Its generic answers (octet-stream, text/plain,
empty) are treated as "no signature matched" and the extension guess wins.
"""

import logging
import re
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

import magic

from ..config import settings
from .utils import file_extension, guess_mime_from_name

log = logging.getLogger(__name__)

OCTET_STREAM = "application/octet-stream"

ALLOWED_MIME_TYPES: FrozenSet[str] = frozenset({
    # Images
    "image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml",
    "image/bmp", "image/tiff", "image/x-icon", "image/vnd.microsoft.icon",
    # Videos
    "video/mp4", "video/webm", "video/ogg", "video/quicktime", "video/x-msvideo",
    "video/x-ms-wmv", "video/x-flv", "video/matroska", "video/3gpp", "video/3gpp2",
    # Audio
    "audio/mpeg", "audio/wav", "audio/ogg", "audio/flac", "audio/aac",
    "audio/x-m4a", "audio/webm",
    # Documents
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/rtf",
    "application/vnd.oasis.opendocument.text",
    "application/vnd.oasis.opendocument.spreadsheet",
    "application/vnd.oasis.opendocument.presentation",
    # Archives
    "application/zip", "application/x-rar-compressed", "application/x-7z-compressed",
    "application/x-tar", "application/gzip", "application/x-bzip2", "application/x-xz",
    # Text
    "text/plain", "text/csv", "text/html", "text/css", "text/javascript",
    "application/json", "application/xml", "text/xml",
    # Fonts
    "font/ttf", "font/otf", "font/woff", "font/woff2",
    # Other
    OCTET_STREAM,
})

DANGEROUS_EXTENSIONS: FrozenSet[str] = frozenset({
    ".exe", ".bat", ".cmd", ".sh", ".php", ".asp", ".aspx", ".jsp",
    ".pl", ".py", ".rb", ".jar", ".class", ".js", ".vbs", ".ps1",
    ".msi", ".com", ".scr", ".pif", ".application", ".gadget",
    ".msp", ".hta", ".cpl", ".msc", ".vb", ".vbe", ".ws", ".wsf",
    ".wsc", ".wsh", ".psc1", ".psc2", ".msh", ".msh1", ".msh2",
    ".mshxml", ".msh1xml", ".msh2xml", ".scf", ".lnk", ".inf",
    ".reg", ".docm", ".dotm", ".xlsm", ".xltm", ".xlam", ".pptm",
    ".potm", ".ppam", ".sldm", ".sldx",
})

MALICIOUS_PATTERNS: Tuple[re.Pattern, ...] = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"<\s*script\s*>.*<\s*/script\s*>",
    r"javascript:",
    r"vbscript:",
    r"data:",
    r"onload=",
    r"onerror=",
    r"onclick=",
    r"eval\(",
    r"document\.cookie",
    r"window\.location",
    r"\.\./",
    r"/etc/passwd",
    r"/bin/sh",
    r"union.*select",
    r"insert.*into",
    r"drop.*table",
    r"delete.*from",
    r"update.*set",
    r"create.*table",
    r"alter.*table",
    r"exec\(",
    r"system\(",
    r"shell_exec\(",
    r"passthru\(",
))

DANGEROUS_SIGNATURES: Tuple[Tuple[str, bytes], ...] = (
    ("EXE", b"MZ"),
    ("EXE", b"ZM"),
    ("ELF", b"\x7fELF"),
    ("shebang", b"#!"),
    ("CAB", b"MSCF"),
    ("ZIP", b"PK\x03\x04"),
    ("RAR", b"Rar!\x1a\x07"),
    ("7z", b"7z\xbc\xaf\x27\x1c"),
)

# Containers that legitimately start with one of the signatures above.
SIGNATURE_SAFE_EXTENSIONS: FrozenSet[str] = frozenset({
    ".zip", ".rar", ".7z",
    ".docx", ".xlsx", ".pptx", ".odt", ".ods", ".odp",
})

_GENERIC_SNIFFS = frozenset({OCTET_STREAM, "text/plain", "inode/x-empty", "application/x-empty"})
_ZIP_CONTAINERS = frozenset({
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.oasis.opendocument.text",
    "application/vnd.oasis.opendocument.spreadsheet",
    "application/vnd.oasis.opendocument.presentation",
})
# libmagic and the mimetypes table disagree on a few labels
_ALIASES = {
    "audio/x-wav": "audio/wav",
    "audio/vnd.wave": "audio/wav",
    "audio/x-flac": "audio/flac",
    "audio/mp3": "audio/mpeg",
    "application/x-gzip": "application/gzip",
    "application/x-zip-compressed": "application/zip",
    "application/vnd.rar": "application/x-rar-compressed",
    "application/x-rar": "application/x-rar-compressed",
    "video/x-matroska": "video/matroska",
    "image/x-ms-bmp": "image/bmp",
    "application/x-font-ttf": "font/ttf",
    "font/sfnt": "font/ttf",
    "application/x-tika-ooxml": "application/zip",
}

SCAN_PREFIX_BYTES = 1024


def normalize_mime(value: Optional[str]) -> str:
    mime = (value or "").split(";", 1)[0].strip().lower()
    return _ALIASES.get(mime, mime)


@dataclass
class ValidationResult:
    ok: bool
    error: Optional[str] = None
    mime_type: Optional[str] = None
    extension: Optional[str] = None
    status: int = 400

    @classmethod
    def reject(cls, error: str, status: int = 400) -> "ValidationResult":
        return cls(ok=False, error=error, status=status)


class FileValidator:
    def __init__(self, max_file_size: Optional[int] = None) -> None:
        self.max_file_size = max_file_size or settings.max_file_size_bytes

    @property
    def allowed_mime_types(self) -> FrozenSet[str]:
        return ALLOWED_MIME_TYPES

    def is_extension_allowed(self, filename: str) -> bool:
        return file_extension(filename) not in DANGEROUS_EXTENSIONS

    def sniff(self, data: bytes, filename: str) -> str:
        sniffed = normalize_mime(magic.from_buffer(data, mime=True)) if data else ""
        guessed = normalize_mime(guess_mime_from_name(filename))
        if sniffed == "application/zip" and guessed in _ZIP_CONTAINERS:
            return guessed
        if sniffed and sniffed not in _GENERIC_SNIFFS:
            return sniffed
        return guessed or sniffed or OCTET_STREAM

    def validate(self, data: bytes, filename: str, declared_type: Optional[str] = None) -> ValidationResult:
        size = len(data)
        if size == 0:
            return ValidationResult.reject("Empty file")
        if size > self.max_file_size:
            limit_mb = self.max_file_size // (1024 * 1024)
            return ValidationResult.reject(f"File size exceeds {limit_mb}MB limit", status=413)

        name = (filename or "").lower()
        extension = file_extension(name)
        if extension in DANGEROUS_EXTENSIONS:
            return ValidationResult.reject("File type is not allowed for security reasons")

        detected = self.sniff(data, name)
        if detected not in ALLOWED_MIME_TYPES:
            return ValidationResult.reject(f'File type "{detected}" is not supported')

        declared = normalize_mime(declared_type)
        if declared and declared != OCTET_STREAM and declared != detected:
            log.info("[VALIDATOR] type mismatch for %s: declared=%s detected=%s", filename, declared, detected)
            return ValidationResult.reject("File type mismatch detected")

        problem = self.scan_content(data, extension)
        if problem:
            return ValidationResult.reject(problem)

        return ValidationResult(ok=True, mime_type=detected, extension=extension)

    def scan_content(self, data: bytes, extension: str) -> Optional[str]:
        prefix = data[:SCAN_PREFIX_BYTES].decode("utf-8", errors="replace")
        for pattern in MALICIOUS_PATTERNS:
            if pattern.search(prefix):
                return "File contains potentially malicious content"

        for label, signature in DANGEROUS_SIGNATURES:
            if data.startswith(signature) and extension not in SIGNATURE_SAFE_EXTENSIONS:
                log.info("[VALIDATOR] %s signature with extension %r", label, extension)
                return "File has executable signature but wrong extension"
        return None


file_validator = FileValidator()
