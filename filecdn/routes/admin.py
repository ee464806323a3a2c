from __future__ import annotations
import logging
import time

from fastapi import APIRouter, Depends, Query

from filecdn.errors import NotFound
from filecdn.metadata.store import MetadataStore, get_metadata_store
from filecdn.models import BlockRequest, utcnow
from filecdn.responses import envelope
from filecdn.security.deps import RequestContext, RouteGuard, admin_guard, get_security_gate
from filecdn.security.gate import SecurityGate
from filecdn.storage.factory import BackendLookup, get_backend_lookup

log = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/cleanup")
async def cleanup_expired(
    limit: int = Query(500, ge=1, le=5000),
    _ip: str = Depends(RouteGuard("admin_cleanup")),
    ctx: RequestContext = Depends(admin_guard),
    store: MetadataStore = Depends(get_metadata_store),
    backend_for: BackendLookup = Depends(get_backend_lookup),
):
    started = time.perf_counter()
    report = await store.cleanup_expired(backend_for, limit=limit)
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    log.info("[CLEANUP] run by %s: %s in %dms", ctx.sub, report.as_dict(), elapsed_ms)
    return envelope({
        **report.as_dict(),
        "executionTime": f"{elapsed_ms}ms",
        "timestamp": utcnow().isoformat(),
    }, message="Cleanup completed successfully")


@router.get("/blocklist")
async def list_blocked(
    _ip: str = Depends(RouteGuard("admin_blocklist")),
    _ctx: RequestContext = Depends(admin_guard),
    gate: SecurityGate = Depends(get_security_gate),
):
    removed = gate.blocklist.sweep()
    entries = [e.as_dict() for e in gate.blocklist.entries()]
    return envelope({"items": entries, "count": len(entries), "swept": removed})


@router.post("/blocklist")
async def block_ip(
    payload: BlockRequest,
    _ip: str = Depends(RouteGuard("admin_blocklist")),
    ctx: RequestContext = Depends(admin_guard),
    gate: SecurityGate = Depends(get_security_gate),
):
    await gate.block_ip(payload.ip, payload.reason, payload.duration)
    log.info("[SECURITY] %s blocked %s", ctx.sub, payload.ip)
    return envelope({"ip": payload.ip, "blocked": True})


@router.delete("/blocklist/{ip}")
async def unblock_ip(
    ip: str,
    _ip: str = Depends(RouteGuard("admin_blocklist")),
    ctx: RequestContext = Depends(admin_guard),
    gate: SecurityGate = Depends(get_security_gate),
):
    if not await gate.blocklist.unblock(ip):
        raise NotFound("IP is not blocked")
    log.info("[SECURITY] %s unblocked %s", ctx.sub, ip)
    return envelope({"ip": ip, "blocked": False})
