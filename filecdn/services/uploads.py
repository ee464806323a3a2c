from __future__ import annotations
"""
Upload pipeline shared by the multipart and URL routes.

    prepare_file   -> Validator; raises ValidationError, touches no backend
    UploadService  -> select provider -> put bytes -> replicate metadata
    fetch_remote   -> bounded streaming GET for URL uploads
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx

from filecdn.config import settings
from filecdn.errors import BackendError, ValidationError
from filecdn.files.utils import compute_sha256, sanitize_filename
from filecdn.files.validator import FileValidator, file_validator, normalize_mime
from filecdn.metadata.store import MetadataStore
from filecdn.models import FileRecord, generate_file_id, utcnow
from filecdn.storage.base import StorageBackend
from filecdn.storage.factory import BackendLookup, get_storage_backend
from filecdn.storage.providers import DEFAULT_PROVIDER, select_provider

log = logging.getLogger(__name__)

FETCH_CHUNK = 64 * 1024


@dataclass
class PreparedFile:
    data: bytes
    original_name: str
    filename: str
    mime_type: str
    extension: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadOutcome:
    prepared: PreparedFile
    provider: Optional[str] = None
    record: Optional[FileRecord] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.record is not None


def prepare_file(
    data: bytes,
    filename: Optional[str],
    declared_type: Optional[str],
    validator: FileValidator = file_validator,
) -> PreparedFile:
    original = filename or "file"
    result = validator.validate(data, original, declared_type)
    if not result.ok:
        raise ValidationError(f"{original}: {result.error}", status_code=result.status)
    return PreparedFile(
        data=data,
        original_name=original,
        filename=sanitize_filename(original),
        mime_type=result.mime_type or "application/octet-stream",
        extension=result.extension or "",
    )


class UploadService:
    def __init__(
        self,
        store: MetadataStore,
        backend_for: BackendLookup = get_storage_backend,
        timeout_s: Optional[float] = None,
        public_base_url: Optional[str] = None,
        retention_days: Optional[int] = None,
    ) -> None:
        self.store = store
        self.backend_for = backend_for
        self.timeout_s = timeout_s or settings.backend_timeout_seconds
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self.retention_days = settings.file_retention_days if retention_days is None else retention_days

    def _resolve_backend(self, provider: str) -> Tuple[str, StorageBackend]:
        """Selected backend, or the default one when the selected provider has no credentials."""
        try:
            return provider, self.backend_for(provider)
        except BackendError:
            if provider == DEFAULT_PROVIDER:
                raise
            log.warning("[UPLOAD] provider %s not configured, falling back to %s", provider, DEFAULT_PROVIDER)
            return DEFAULT_PROVIDER, self.backend_for(DEFAULT_PROVIDER)

    async def store_file(
        self,
        prepared: PreparedFile,
        ip: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> UploadOutcome:
        outcome = UploadOutcome(prepared=prepared)
        file_id = generate_file_id()
        stored_name = f"{file_id}{prepared.extension or '.bin'}"

        try:
            provider, backend = self._resolve_backend(select_provider(prepared.mime_type, prepared.size))
            outcome.provider = provider
            stored = await asyncio.wait_for(
                backend.put(file_id, stored_name, prepared.data, prepared.mime_type),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            outcome.error = f"Storage provider {outcome.provider} timed out"
            log.error("[UPLOAD] %s: %s", prepared.filename, outcome.error)
            return outcome
        except BackendError as e:
            outcome.error = str(e.detail)
            log.error("[UPLOAD] %s: %s", prepared.filename, outcome.error)
            return outcome
        except httpx.HTTPError as e:
            outcome.error = f"Storage provider {outcome.provider} unreachable"
            log.error("[UPLOAD] %s on %s: %s", prepared.filename, outcome.provider, e)
            return outcome
        except Exception as e:
            # e.g. a provider reply the adapter could not parse
            outcome.error = f"Storage provider {outcome.provider} failed: {type(e).__name__}"
            log.exception("[UPLOAD] %s on %s", prepared.filename, outcome.provider)
            return outcome

        now = utcnow()
        record = FileRecord(
            id=file_id,
            filename=prepared.filename,
            original_name=prepared.original_name,
            stored_name=stored_name,
            size=prepared.size,
            mime_type=prepared.mime_type,
            hash=compute_sha256(prepared.data),
            storage_provider=provider,
            url=stored.url or f"{self.public_base_url}/files/{file_id}/download",
            storage_path=stored.storage_path,
            ip_address=ip,
            source_url=source_url,
            created_at=now,
            expires_at=now + timedelta(days=self.retention_days) if self.retention_days > 0 else None,
        )

        written = await self.store.store(record)
        if not written.ok:
            outcome.error = "Metadata could not be persisted"
            await self._discard_blob(backend, stored.storage_path or file_id)
            return outcome

        outcome.record = record
        log.info("[UPLOAD] stored %s (%s, %d bytes) on %s", record.id, record.mime_type, record.size, provider)
        return outcome

    async def _discard_blob(self, backend: StorageBackend, storage_path: str) -> None:
        try:
            await asyncio.wait_for(backend.delete(storage_path), timeout=self.timeout_s)
        except Exception as e:
            log.warning("[UPLOAD] orphaned blob %s on %s: %s", storage_path, backend.name, e)


def filename_from_url(url: str, content_disposition: Optional[str] = None) -> str:
    if content_disposition and "filename=" in content_disposition:
        value = content_disposition.split("filename=", 1)[1].split(";", 1)[0].strip().strip('"')
        if value:
            return value
    name = unquote(urlparse(url).path.rsplit("/", 1)[-1])
    return name or "file.bin"


async def fetch_remote(
    url: str,
    max_bytes: Optional[int] = None,
    timeout_s: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Tuple[bytes, str, str]:
    """GET `url` without buffering more than `max_bytes`; returns (data, filename, content type)."""
    limit = max_bytes or settings.max_file_size_bytes
    limit_mb = limit // (1024 * 1024)
    headers = {"User-Agent": settings.url_fetch_user_agent}

    async with httpx.AsyncClient(
        timeout=timeout_s or settings.backend_timeout_seconds,
        follow_redirects=True,
        transport=transport,
    ) as client:
        try:
            async with client.stream("GET", url, headers=headers) as resp:
                if resp.status_code >= 400:
                    raise ValidationError(f"Failed to fetch URL: {resp.status_code} {resp.reason_phrase}")

                declared_len = resp.headers.get("content-length")
                if declared_len and declared_len.isdigit() and int(declared_len) > limit:
                    raise ValidationError(f"File size exceeds {limit_mb}MB limit", status_code=413)

                buf = bytearray()
                async for chunk in resp.aiter_bytes(FETCH_CHUNK):
                    buf.extend(chunk)
                    if len(buf) > limit:
                        raise ValidationError(f"File size exceeds {limit_mb}MB limit", status_code=413)

                content_type = normalize_mime(resp.headers.get("content-type")) or "application/octet-stream"
                filename = filename_from_url(str(resp.url), resp.headers.get("content-disposition"))
        except httpx.HTTPError as e:
            log.info("[UPLOAD] fetch %s failed: %s", url, e)
            raise ValidationError(f"Failed to fetch URL: {type(e).__name__}")

    return bytes(buf), filename, content_type
