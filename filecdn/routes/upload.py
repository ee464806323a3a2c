from __future__ import annotations
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, UploadFile
from fastapi.responses import JSONResponse

from filecdn.config import settings
from filecdn.errors import ValidationError
from filecdn.metadata.store import MetadataStore, get_metadata_store
from filecdn.models import UploadedFileOut, UploadFailureOut, UrlUploadRequest
from filecdn.responses import envelope
from filecdn.security.deps import RouteGuard, get_security_gate
from filecdn.security.gate import SecurityGate, validate_input
from filecdn.services.notifications import Notifier, get_notifier
from filecdn.services.uploads import UploadOutcome, UploadService, fetch_remote, prepare_file
from filecdn.storage.factory import BackendLookup, get_backend_lookup

log = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api/upload", tags=["upload"])


def get_upload_service(
    store: MetadataStore = Depends(get_metadata_store),
    backend_for: BackendLookup = Depends(get_backend_lookup),
) -> UploadService:
    return UploadService(store, backend_for=backend_for)


def _summary(outcomes: List[UploadOutcome]) -> List[dict]:
    return [
        {
            "filename": o.prepared.filename,
            "size": o.prepared.size,
            "provider": o.provider,
            "ok": o.ok,
        }
        for o in outcomes
    ]


def _render(outcomes: List[UploadOutcome], single: bool = False) -> JSONResponse:
    stored = [UploadedFileOut.from_record(o.record).model_dump() for o in outcomes if o.ok]
    failures = [
        UploadFailureOut(filename=o.prepared.filename, dbType=o.provider, error=o.error or "Upload failed").model_dump()
        for o in outcomes
        if not o.ok
    ]
    if not stored:
        first = failures[0]["error"] if failures else "Upload failed"
        return JSONResponse(status_code=502, content=envelope(error=first, failures=failures))

    data = stored[0] if single else stored
    body = envelope(
        data,
        message=f"Successfully uploaded {len(stored)} of {len(outcomes)} files",
        failures=failures,
    )
    return JSONResponse(content=body)


@router.post("")
async def upload_files(
    background: BackgroundTasks,
    files: Optional[List[UploadFile]] = File(None),
    ip: str = Depends(RouteGuard("upload", detect_attacks=True)),
    gate: SecurityGate = Depends(get_security_gate),
    uploads: UploadService = Depends(get_upload_service),
    notifier: Notifier = Depends(get_notifier),
):
    files = files or []
    if not files:
        raise ValidationError("No files provided")
    if len(files) > settings.max_files_per_request:
        await gate.block_ip(ip, "Too many files attempted")
        raise ValidationError(f"Maximum {settings.max_files_per_request} files allowed per request")

    # validate everything before the first backend call
    prepared = []
    for upload in files:
        data = await upload.read()
        prepared.append(prepare_file(data, upload.filename, upload.content_type))

    outcomes = [await uploads.store_file(p, ip=ip) for p in prepared]
    log.info("[UPLOAD] ip=%s files=%d stored=%d", ip, len(outcomes), sum(o.ok for o in outcomes))

    background.add_task(notifier.send_upload_summary, ip, _summary(outcomes))
    return _render(outcomes)


@router.post("/url")
async def upload_from_url(
    payload: UrlUploadRequest,
    background: BackgroundTasks,
    ip: str = Depends(RouteGuard("upload_url", detect_attacks=True)),
    uploads: UploadService = Depends(get_upload_service),
    notifier: Notifier = Depends(get_notifier),
):
    url = payload.url.strip()
    if not validate_input(url, "url"):
        raise ValidationError("Invalid URL format")

    data, filename, content_type = await fetch_remote(url)
    prepared = prepare_file(data, filename, content_type)
    outcome = await uploads.store_file(prepared, ip=ip, source_url=url)
    log.info("[UPLOAD] ip=%s url=%s stored=%s", ip, url, outcome.ok)

    background.add_task(notifier.send_upload_summary, ip, _summary([outcome]))
    return _render([outcome], single=True)
