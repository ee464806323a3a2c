from __future__ import annotations
import asyncio
import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import RedirectResponse, Response

from filecdn.config import settings
from filecdn.errors import BackendError, NotFound, ValidationError
from filecdn.files.utils import build_content_disposition
from filecdn.metadata.store import MetadataStore, get_metadata_store
from filecdn.models import FileRecord
from filecdn.responses import envelope
from filecdn.security.deps import RouteGuard, get_security_gate
from filecdn.security.gate import SecurityGate, validate_input
from filecdn.services.notifications import Notifier, get_notifier
from filecdn.storage.base import StorageBackend
from filecdn.storage.factory import BackendLookup, get_backend_lookup

log = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/files", tags=["files"])

CACHE_FOREVER = "public, max-age=31536000, immutable"


def _download_url(file_id: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/files/{file_id}/download"


async def _checked_id(file_id: str, ip: str, gate: SecurityGate, block: bool) -> str:
    if validate_input(file_id, "id"):
        return file_id
    if block:
        await gate.block_ip(ip, "Invalid file ID format")
    raise ValidationError("Invalid file ID")


@router.get("/{file_id}")
async def file_info(
    file_id: str,
    ip: str = Depends(RouteGuard("file_info")),
    gate: SecurityGate = Depends(get_security_gate),
    store: MetadataStore = Depends(get_metadata_store),
):
    await _checked_id(file_id, ip, gate, block=True)
    record = await store.get(file_id)
    if record is None:
        raise NotFound()
    return envelope({
        "id": record.id,
        "name": record.filename,
        "size": record.size,
        "mimeType": record.mime_type,
        "chunked": record.chunked,
        "chunkCount": record.chunk_count,
        "checksum": record.hash,
        "createdAt": record.created_at.isoformat(),
        "downloads": record.downloads,
        "downloadUrl": _download_url(record.id),
        "dbType": record.storage_provider,
        "url": record.url,
    })


@router.get("/{file_id}/status")
async def file_status(
    file_id: str,
    ip: str = Depends(RouteGuard("file_status")),
    gate: SecurityGate = Depends(get_security_gate),
    store: MetadataStore = Depends(get_metadata_store),
):
    await _checked_id(file_id, ip, gate, block=False)
    record = await store.get(file_id)
    if record is None:
        return envelope({
            "id": file_id,
            "name": "Unknown",
            "size": 0,
            "status": "not_found",
            "message": "File not found or not yet processed",
            "chunked": False,
            "chunkCount": 0,
        })
    return envelope({
        "id": record.id,
        "name": record.filename,
        "size": record.size,
        "status": record.status,
        "message": "Upload completed successfully",
        "chunked": record.chunked,
        "chunkCount": record.chunk_count,
        "downloadUrl": _download_url(record.id),
    })


async def _read_blob(backend: StorageBackend, record: FileRecord) -> bytes:
    try:
        return await asyncio.wait_for(
            backend.get(record.storage_path or record.id),
            timeout=settings.backend_timeout_seconds,
        )
    except asyncio.TimeoutError:
        raise BackendError(f"Storage provider {record.storage_provider} timed out", provider=record.storage_provider)


@router.get("/{file_id}/download")
async def file_download(
    file_id: str,
    background: BackgroundTasks,
    ip: str = Depends(RouteGuard("file_download")),
    gate: SecurityGate = Depends(get_security_gate),
    store: MetadataStore = Depends(get_metadata_store),
    notifier: Notifier = Depends(get_notifier),
    backend_for: BackendLookup = Depends(get_backend_lookup),
):
    await _checked_id(file_id, ip, gate, block=True)
    record = await store.get(file_id)
    if record is None:
        raise NotFound()

    background.add_task(store.increment_downloads, record.id)
    background.add_task(notifier.send_download, ip, record.id, record.filename, record.size)

    backend = backend_for(record.storage_provider)
    if backend.serves_redirect and record.url:
        return RedirectResponse(record.url, status_code=307, headers={"Cache-Control": CACHE_FOREVER})

    data = await _read_blob(backend, record)
    log.info("[DOWNLOAD] %s (%d bytes) from %s to %s", record.id, len(data), record.storage_provider, ip)
    return Response(
        content=data,
        media_type=record.mime_type,
        headers={
            "Content-Disposition": build_content_disposition(record.filename, attachment=True),
            "Cache-Control": CACHE_FOREVER,
        },
    )
