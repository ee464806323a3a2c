from __future__ import annotations
import time

from fastapi import APIRouter, Depends

from filecdn.config import settings
from filecdn.files.utils import format_bytes
from filecdn.metadata.store import MetadataStore, get_metadata_store
from filecdn.models import utcnow
from filecdn.responses import envelope
from filecdn.security.deps import RouteGuard

router = APIRouter(prefix="/api", tags=["stats"])

_started = time.monotonic()


def format_uptime(seconds: float) -> str:
    seconds = int(max(0, seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    return f"{days}d {hours}h {rem // 60}m"


@router.get("/stats")
async def stats(
    _ip: str = Depends(RouteGuard("stats")),
    store: MetadataStore = Depends(get_metadata_store),
):
    summary = await store.stats()
    return envelope({
        "totalFiles": summary.total_files,
        "totalSize": format_bytes(summary.total_size),
        "uptime": format_uptime(time.monotonic() - _started),
        "databases": len(store.replicas),
        "activeUploads": 0,
        "databaseBreakdown": summary.by_provider,
        "timestamp": utcnow().isoformat(),
        "version": settings.app_version,
    })
