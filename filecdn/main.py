import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .db import cache, mongo
from .metadata.store import init_metadata_store
from .responses import error_response
from .security.deps import get_security_gate, init_security_gate
from .security.gate import SECURITY_HEADERS
from .services.notifications import close_notifier, fire_and_forget, get_notifier
from .storage.factory import configured_backends
from .storage.sqlblob import SqlBlobStorage

from .routes.upload import router as upload_router
from .routes.files import router as files_router
from .routes.stats import router as stats_router
from .routes.admin import router as admin_router

log = logging.getLogger("uvicorn.error")


async def _sweep_security_state(interval: int) -> None:
    gate = get_security_gate()
    while True:
        await asyncio.sleep(interval)
        removed = gate.blocklist.sweep()
        idle = gate.limiter.prune()
        if removed or idle:
            log.info("[SECURITY] swept %d expired blocks, %d idle rate-limit keys", removed, idle)


async def _prepare_schemas(store) -> None:
    await store.ensure_schemas()
    for name, backend in configured_backends().items():
        if isinstance(backend, SqlBlobStorage):
            try:
                await backend.ensure_schema()
            except Exception as e:
                log.error("[STORAGE] blob table setup on %s failed: %s", name, e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await mongo.connect()
    try:
        await cache.connect()
    except Exception as e:
        # optional: run without the shared cache
        log.error("Redis unavailable, continuing without cache: %s", e)

    gate = init_security_gate(cache.get_redis())
    loaded = await gate.blocklist.load()
    log.info("[SECURITY] %d blocked IPs restored", loaded)

    store = init_metadata_store()
    await _prepare_schemas(store)

    sweeper = asyncio.create_task(_sweep_security_state(settings.blocklist_sweep_seconds))
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await close_notifier()
        await cache.disconnect()
        await mongo.disconnect()


app = FastAPI(title="filecdn", version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()] or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def request_shape_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return error_response(400, "Invalid request")
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    return error_response(400, message)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    log.exception("Unhandled error on %s", request.url.path)
    fire_and_forget(get_notifier().send_error(request.url.path, f"{type(exc).__name__}: {exc}"))
    return error_response(500, "Internal server error", headers=dict(SECURITY_HEADERS))


app.include_router(upload_router)
app.include_router(files_router)
app.include_router(stats_router)
app.include_router(admin_router)


@app.get("/healthz")
async def healthz():
    return {"ok": True, "mongo": mongo.is_connected(), "cache": cache.get_redis() is not None}
