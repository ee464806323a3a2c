from __future__ import annotations
"""
Replicated metadata store.

Writes fan out to every replica concurrently; the write is `ok` once at least
`quorum` replicas acknowledged. Reads try the cache, then ask every replica and
take the first non-empty answer in replica order (primary first), repairing
replicas ahead of it that answered "missing". Download counters are bumped
best-effort on every replica. Expiry cleanup is driven from the primary.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .replicas import MetadataReplica, MetadataStats, MongoReplica, PostgrestReplica, SqlReplica
from filecdn.config import settings
from filecdn.db.cache import JsonCache, get_cache
from filecdn.db.sql_http import LibsqlHttpClient, NeonHttpClient
from filecdn.models import FileRecord, utcnow
from filecdn.storage.factory import BackendLookup

log = logging.getLogger(__name__)

CACHE_PREFIX = "file:"


def _expired(record: FileRecord) -> bool:
    return record.expires_at is not None and record.expires_at <= utcnow()


@dataclass
class WriteResult:
    acknowledged: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    quorum: int = 1

    @property
    def ok(self) -> bool:
        return len(self.acknowledged) >= self.quorum


@dataclass
class CleanupReport:
    expired: int = 0
    deleted: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"expired": self.expired, "deleted": self.deleted, "errors": list(self.errors)}


class MetadataStore:
    def __init__(
        self,
        replicas: Sequence[MetadataReplica],
        cache: Optional[JsonCache] = None,
        quorum: int = 1,
        cache_ttl: int = 3600,
        timeout_s: float = 15.0,
    ) -> None:
        if not replicas:
            raise ValueError("MetadataStore needs at least one replica")
        self.replicas = list(replicas)
        self.cache = cache
        self.quorum = max(1, min(int(quorum), len(self.replicas)))
        self.cache_ttl = cache_ttl
        self.timeout_s = timeout_s

    @property
    def primary(self) -> MetadataReplica:
        return self.replicas[0]

    @property
    def replica_names(self) -> List[str]:
        return [r.name for r in self.replicas]

    async def _bounded(self, aw: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(aw, timeout=self.timeout_s)

    async def _fan_out(self, op: Callable[[MetadataReplica], Awaitable[Any]]) -> List[Tuple[MetadataReplica, Any]]:
        """Run `op` on every replica concurrently; exceptions come back as values."""
        results = await asyncio.gather(
            *(self._bounded(op(r)) for r in self.replicas),
            return_exceptions=True,
        )
        return list(zip(self.replicas, results))

    @staticmethod
    def _describe(err: BaseException) -> str:
        if isinstance(err, asyncio.TimeoutError):
            return "timeout"
        return str(getattr(err, "detail", None) or err) or type(err).__name__

    # ---- write ----

    async def store(self, record: FileRecord) -> WriteResult:
        result = WriteResult(quorum=self.quorum)
        for replica, outcome in await self._fan_out(lambda r: r.upsert(record)):
            if isinstance(outcome, BaseException):
                result.failed[replica.name] = self._describe(outcome)
                log.error("[METADATA] store %s on %s failed: %s", record.id, replica.name, result.failed[replica.name])
            else:
                result.acknowledged.append(replica.name)

        if result.ok:
            await self._cache_set(record)
        else:
            log.error(
                "[METADATA] store %s missed quorum (%d/%d)", record.id, len(result.acknowledged), self.quorum
            )
        return result

    # ---- read ----

    async def get(self, file_id: str) -> Optional[FileRecord]:
        cached = await self._cache_get(file_id)
        if cached is not None and not _expired(cached):
            return cached

        answers = await self._fan_out(lambda r: r.fetch(file_id))
        found: Optional[FileRecord] = None
        missing_ahead: List[MetadataReplica] = []
        for replica, outcome in answers:
            if isinstance(outcome, BaseException):
                log.warning("[METADATA] fetch %s from %s failed: %s", file_id, replica.name, self._describe(outcome))
                continue
            if outcome is None:
                missing_ahead.append(replica)
                continue
            found = outcome
            break

        if found is None:
            return None
        if _expired(found):
            # left behind by a partial cleanup; never resurrect it
            return None

        if missing_ahead:
            await self._repair(found, missing_ahead)
        await self._cache_set(found)
        return found

    async def _repair(self, record: FileRecord, replicas: List[MetadataReplica]) -> None:
        results = await asyncio.gather(
            *(self._bounded(r.upsert(record)) for r in replicas),
            return_exceptions=True,
        )
        for replica, outcome in zip(replicas, results):
            if isinstance(outcome, BaseException):
                log.warning("[METADATA] read-repair of %s on %s failed: %s", record.id, replica.name, self._describe(outcome))
            else:
                log.info("[METADATA] read-repaired %s on %s", record.id, replica.name)

    # ---- counters ----

    async def increment_downloads(self, file_id: str) -> int:
        """Bump the counter everywhere; returns how many replicas applied it."""
        applied = 0
        for replica, outcome in await self._fan_out(lambda r: r.increment_downloads(file_id)):
            if isinstance(outcome, BaseException):
                log.warning("[METADATA] increment %s on %s failed: %s", file_id, replica.name, self._describe(outcome))
            else:
                applied += 1
        await self._cache_delete(file_id)
        return applied

    # ---- expiry ----

    async def delete(self, file_id: str) -> WriteResult:
        """Remove `file_id` everywhere; `ok` only when every replica answered."""
        result = WriteResult(quorum=len(self.replicas))
        for replica, outcome in await self._fan_out(lambda r: r.delete(file_id)):
            if isinstance(outcome, BaseException):
                result.failed[replica.name] = self._describe(outcome)
                log.warning("[METADATA] delete %s on %s failed: %s", file_id, replica.name, result.failed[replica.name])
            else:
                result.acknowledged.append(replica.name)
        await self._cache_delete(file_id)
        return result

    async def cleanup_expired(self, backend_for: BackendLookup, limit: int = 500) -> CleanupReport:
        report = CleanupReport()
        try:
            expired = await self._bounded(self.primary.list_expired(utcnow(), limit))
        except Exception as e:
            report.errors.append(f"{self.primary.name}: {self._describe(e)}")
            log.error("[CLEANUP] listing expired files failed: %s", e)
            return report

        report.expired = len(expired)
        for record in expired:
            try:
                backend = backend_for(record.storage_provider)
                await self._bounded(backend.delete(record.storage_path or record.id))
            except Exception as e:
                report.errors.append(f"{record.id}: blob delete failed ({self._describe(e)})")
                log.warning("[CLEANUP] blob %s on %s: %s", record.id, record.storage_provider, e)
            removed = await self.delete(record.id)
            if removed.ok:
                report.deleted += 1
            else:
                for name, reason in removed.failed.items():
                    report.errors.append(f"{record.id}: delete on {name} failed ({reason})")

        log.info("[CLEANUP] expired=%d deleted=%d errors=%d", report.expired, report.deleted, len(report.errors))
        return report

    # ---- stats ----

    async def stats(self) -> MetadataStats:
        return await self._bounded(self.primary.stats())

    async def ensure_schemas(self) -> None:
        for replica in self.replicas:
            try:
                await self._bounded(replica.ensure_schema())
            except Exception as e:
                log.error("[METADATA] schema setup on %s failed: %s", replica.name, e)

    # ---- cache helpers ----

    async def _cache_get(self, file_id: str) -> Optional[FileRecord]:
        if self.cache is None:
            return None
        doc = await self.cache.get(CACHE_PREFIX + file_id)
        if not doc:
            return None
        try:
            return FileRecord.from_document(doc)
        except (TypeError, ValueError) as e:
            log.warning("[METADATA] dropping unreadable cache entry %s: %s", file_id, e)
            await self.cache.delete(CACHE_PREFIX + file_id)
            return None

    async def _cache_set(self, record: FileRecord) -> None:
        if self.cache is not None:
            await self.cache.set(CACHE_PREFIX + record.id, record.to_json(), self.cache_ttl)

    async def _cache_delete(self, file_id: str) -> None:
        if self.cache is not None:
            await self.cache.delete(CACHE_PREFIX + file_id)


def build_replicas() -> List[MetadataReplica]:
    """Mongo first (primary), then every SQL/REST replica that has credentials."""
    timeout = settings.backend_timeout_seconds
    replicas: List[MetadataReplica] = [MongoReplica()]
    if settings.supabase_url and settings.supabase_service_role_key:
        replicas.append(PostgrestReplica(settings.supabase_url, settings.supabase_service_role_key, timeout_s=timeout))
    if settings.neon_database_url:
        replicas.append(SqlReplica(NeonHttpClient(settings.neon_database_url, timeout_s=timeout)))
    if settings.turso_database_url:
        replicas.append(SqlReplica(LibsqlHttpClient(settings.turso_database_url, settings.turso_auth_token, timeout_s=timeout)))
    return replicas


_store: Optional[MetadataStore] = None


def init_metadata_store() -> MetadataStore:
    global _store
    _store = MetadataStore(
        build_replicas(),
        cache=get_cache(),
        quorum=settings.metadata_write_quorum,
        cache_ttl=settings.metadata_cache_ttl_seconds,
        timeout_s=settings.backend_timeout_seconds,
    )
    log.info("[METADATA] replicas=%s quorum=%d cache=%s", _store.replica_names, _store.quorum, _store.cache is not None)
    return _store


def get_metadata_store() -> MetadataStore:
    if _store is None:
        return init_metadata_store()
    return _store
