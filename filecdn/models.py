from __future__ import annotations
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_file_id() -> str:
    """Short public handle: 12 hex chars of a random UUID."""
    return uuid.uuid4().hex[:12]


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "t", "true", "yes"}
    return bool(value)


@dataclass
class FileRecord:
    id: str
    filename: str
    original_name: str
    stored_name: str
    size: int
    mime_type: str
    hash: str
    storage_provider: str
    url: str = ""
    storage_path: str = ""
    downloads: int = 0
    status: str = "completed"
    # Reserved; no chunked upload protocol exists.
    chunked: bool = False
    chunk_count: int = 0
    ip_address: Optional[str] = None
    source_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> Dict[str, Any]:
        """JSON-safe form used by the cache and the SQL replicas."""
        doc = self.to_document()
        doc["created_at"] = self.created_at.isoformat()
        doc["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "FileRecord":
        return cls(
            id=str(doc.get("id") or doc.get("_id")),
            filename=doc.get("filename") or "",
            original_name=doc.get("original_name") or doc.get("filename") or "",
            stored_name=doc.get("stored_name") or "",
            size=int(doc.get("size") or 0),
            mime_type=doc.get("mime_type") or "application/octet-stream",
            hash=doc.get("hash") or "",
            storage_provider=doc.get("storage_provider") or "",
            url=doc.get("url") or "",
            storage_path=doc.get("storage_path") or "",
            downloads=int(doc.get("downloads") or 0),
            status=doc.get("status") or "completed",
            chunked=_as_bool(doc.get("chunked")),
            chunk_count=int(doc.get("chunk_count") or 0),
            ip_address=doc.get("ip_address"),
            source_url=doc.get("source_url"),
            created_at=_as_datetime(doc.get("created_at")) or utcnow(),
            expires_at=_as_datetime(doc.get("expires_at")),
        )


# ---- API payloads ----

class UploadedFileOut(BaseModel):
    id: str
    filename: str
    size: int
    mimeType: str
    url: str
    dbType: str
    createdAt: str

    @classmethod
    def from_record(cls, record: FileRecord) -> "UploadedFileOut":
        return cls(
            id=record.id,
            filename=record.filename,
            size=record.size,
            mimeType=record.mime_type,
            url=record.url,
            dbType=record.storage_provider,
            createdAt=record.created_at.isoformat(),
        )


class UploadFailureOut(BaseModel):
    filename: str
    dbType: Optional[str] = None
    error: str


class UrlUploadRequest(BaseModel):
    url: str = Field(..., min_length=1, description="http(s) URL to fetch and store")


class BlockRequest(BaseModel):
    ip: str = Field(..., min_length=1)
    reason: str = Field("Blocked by admin")
    duration: Optional[int] = Field(None, ge=1, description="Seconds; defaults to BLOCK_DURATION_SECONDS")
