from __future__ import annotations
"""
Metadata replicas. Each one holds a full copy of the `files` records.

  MongoReplica     : motor, the designated primary (cleanup and stats read here)
  PostgrestReplica : Supabase REST (PostgREST) over httpx
  SqlReplica       : Neon / Turso through the HTTP SQL clients

Replicas raise on failure; MetadataStore decides what a failure means.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pymongo import ReturnDocument

from filecdn.db.mongo import get_db
from filecdn.db.sql_http import SqlHttpClient
from filecdn.errors import BackendError
from filecdn.models import FileRecord

log = logging.getLogger(__name__)

COLUMNS = (
    "id", "filename", "original_name", "stored_name", "size", "mime_type", "hash",
    "storage_provider", "url", "storage_path", "downloads", "status", "chunked",
    "chunk_count", "ip_address", "source_url", "created_at", "expires_at",
)

# PostgREST cannot run DDL; apply this once in the Supabase SQL editor.
POSTGRES_FILES_DDL = """
CREATE TABLE IF NOT EXISTS files (
  id TEXT PRIMARY KEY,
  filename TEXT NOT NULL,
  original_name TEXT,
  stored_name TEXT,
  size BIGINT NOT NULL DEFAULT 0,
  mime_type TEXT,
  hash TEXT,
  storage_provider TEXT,
  url TEXT,
  storage_path TEXT,
  downloads BIGINT NOT NULL DEFAULT 0,
  status TEXT,
  chunked INTEGER NOT NULL DEFAULT 0,
  chunk_count INTEGER NOT NULL DEFAULT 0,
  ip_address TEXT,
  source_url TEXT,
  created_at TEXT,
  expires_at TEXT
);
CREATE OR REPLACE FUNCTION increment_downloads(file_id TEXT) RETURNS void AS $$
  UPDATE files SET downloads = downloads + 1 WHERE id = file_id;
$$ LANGUAGE sql;
"""


@dataclass
class MetadataStats:
    total_files: int = 0
    total_size: int = 0
    by_provider: Dict[str, Dict[str, int]] = field(default_factory=dict)


class MetadataReplica:
    name: str = "replica"

    async def ensure_schema(self) -> None:
        return None

    async def upsert(self, record: FileRecord) -> None:
        raise NotImplementedError

    async def fetch(self, file_id: str) -> Optional[FileRecord]:
        raise NotImplementedError

    async def increment_downloads(self, file_id: str) -> None:
        raise NotImplementedError

    async def delete(self, file_id: str) -> bool:
        raise NotImplementedError

    async def list_expired(self, now: datetime, limit: int = 100) -> List[FileRecord]:
        raise NotImplementedError

    async def stats(self) -> MetadataStats:
        raise NotImplementedError


def _stats_from_groups(groups: List[Dict[str, Any]]) -> MetadataStats:
    out = MetadataStats()
    for g in groups:
        provider = str(g.get("storage_provider") or "unknown")
        files = int(g.get("files") or 0)
        size = int(g.get("size") or 0)
        out.by_provider[provider] = {"files": files, "size": size}
        out.total_files += files
        out.total_size += size
    return out


class MongoReplica(MetadataReplica):
    name = "mongodb"

    def __init__(self, collection: str = "files") -> None:
        self.collection = collection

    def _col(self):
        return get_db()[self.collection]

    async def upsert(self, record: FileRecord) -> None:
        doc = record.to_document()
        doc["_id"] = doc.pop("id")
        await self._col().replace_one({"_id": doc["_id"]}, doc, upsert=True)

    async def fetch(self, file_id: str) -> Optional[FileRecord]:
        doc = await self._col().find_one({"_id": file_id})
        return FileRecord.from_document(doc) if doc else None

    async def increment_downloads(self, file_id: str) -> None:
        await self._col().find_one_and_update(
            {"_id": file_id},
            {"$inc": {"downloads": 1}},
            return_document=ReturnDocument.AFTER,
        )

    async def delete(self, file_id: str) -> bool:
        res = await self._col().delete_one({"_id": file_id})
        return res.deleted_count > 0

    async def list_expired(self, now: datetime, limit: int = 100) -> List[FileRecord]:
        cursor = (
            self._col()
            .find({"expires_at": {"$ne": None, "$lte": now}})
            .sort("expires_at", 1)
            .limit(int(limit))
        )
        return [FileRecord.from_document(doc) async for doc in cursor]

    async def stats(self) -> MetadataStats:
        pipeline = [
            {"$group": {"_id": "$storage_provider", "files": {"$sum": 1}, "size": {"$sum": "$size"}}},
        ]
        groups = [
            {"storage_provider": g["_id"], "files": g["files"], "size": g["size"]}
            async for g in self._col().aggregate(pipeline)
        ]
        return _stats_from_groups(groups)


class PostgrestReplica(MetadataReplica):
    name = "supabase"

    def __init__(
        self,
        url: str,
        service_key: str,
        table: str = "files",
        timeout_s: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base = url.rstrip("/") + "/rest/v1"
        self.table = table
        self.service_key = service_key
        self.timeout_s = timeout_s
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }
        return httpx.AsyncClient(base_url=self.base, headers=headers, timeout=self.timeout_s, transport=self._transport)

    def _check(self, resp: httpx.Response, action: str) -> None:
        if resp.status_code >= 400:
            raise BackendError(f"Supabase {action} failed ({resp.status_code}): {resp.text[:200]}", provider=self.name)

    async def upsert(self, record: FileRecord) -> None:
        row = record.to_json()
        row["chunked"] = int(record.chunked)
        async with self._client() as client:
            resp = await client.post(
                f"/{self.table}",
                json=row,
                headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            )
        self._check(resp, "upsert")

    async def fetch(self, file_id: str) -> Optional[FileRecord]:
        async with self._client() as client:
            resp = await client.get(f"/{self.table}", params={"id": f"eq.{file_id}", "select": "*"})
        self._check(resp, "fetch")
        rows = resp.json()
        return FileRecord.from_document(rows[0]) if rows else None

    async def increment_downloads(self, file_id: str) -> None:
        async with self._client() as client:
            resp = await client.post("/rpc/increment_downloads", json={"file_id": file_id})
        self._check(resp, "increment")

    async def delete(self, file_id: str) -> bool:
        async with self._client() as client:
            resp = await client.delete(
                f"/{self.table}",
                params={"id": f"eq.{file_id}"},
                headers={"Prefer": "return=representation"},
            )
        self._check(resp, "delete")
        return bool(resp.json())

    async def list_expired(self, now: datetime, limit: int = 100) -> List[FileRecord]:
        params = {
            "expires_at": f"lte.{now.isoformat()}",
            "select": "*",
            "order": "expires_at.asc",
            "limit": str(int(limit)),
        }
        async with self._client() as client:
            resp = await client.get(f"/{self.table}", params=params)
        self._check(resp, "list_expired")
        return [FileRecord.from_document(r) for r in resp.json()]

    async def stats(self) -> MetadataStats:
        async with self._client() as client:
            resp = await client.get(f"/{self.table}", params={"select": "size,storage_provider"})
        self._check(resp, "stats")
        groups: Dict[str, Dict[str, Any]] = {}
        for row in resp.json():
            g = groups.setdefault(row.get("storage_provider") or "unknown", {"files": 0, "size": 0})
            g["files"] += 1
            g["size"] += int(row.get("size") or 0)
        return _stats_from_groups([{"storage_provider": k, **v} for k, v in groups.items()])


class SqlReplica(MetadataReplica):
    def __init__(self, sql: SqlHttpClient) -> None:
        self.sql = sql
        self.name = sql.name

    async def ensure_schema(self) -> None:
        big = "BIGINT" if self.name == "neon" else "INTEGER"
        await self.sql.execute(
            "CREATE TABLE IF NOT EXISTS files ("
            "id TEXT PRIMARY KEY, filename TEXT NOT NULL, original_name TEXT, stored_name TEXT, "
            f"size {big} NOT NULL DEFAULT 0, mime_type TEXT, hash TEXT, storage_provider TEXT, "
            f"url TEXT, storage_path TEXT, downloads {big} NOT NULL DEFAULT 0, status TEXT, "
            "chunked INTEGER NOT NULL DEFAULT 0, chunk_count INTEGER NOT NULL DEFAULT 0, "
            "ip_address TEXT, source_url TEXT, created_at TEXT, expires_at TEXT)"
        )
        await self.sql.execute("CREATE INDEX IF NOT EXISTS idx_files_expires_at ON files (expires_at)")

    async def upsert(self, record: FileRecord) -> None:
        row = record.to_json()
        row["chunked"] = int(record.chunked)
        placeholders = ", ".join("?" for _ in COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in COLUMNS if c != "id")
        await self.sql.execute(
            f"INSERT INTO files ({', '.join(COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT (id) DO UPDATE SET {updates}",
            [row[c] for c in COLUMNS],
        )

    async def fetch(self, file_id: str) -> Optional[FileRecord]:
        result = await self.sql.execute("SELECT * FROM files WHERE id = ?", (file_id,))
        return FileRecord.from_document(result.rows[0]) if result.rows else None

    async def increment_downloads(self, file_id: str) -> None:
        await self.sql.execute("UPDATE files SET downloads = downloads + 1 WHERE id = ?", (file_id,))

    async def delete(self, file_id: str) -> bool:
        result = await self.sql.execute("DELETE FROM files WHERE id = ?", (file_id,))
        return result.affected > 0

    async def list_expired(self, now: datetime, limit: int = 100) -> List[FileRecord]:
        result = await self.sql.execute(
            "SELECT * FROM files WHERE expires_at IS NOT NULL AND expires_at <= ? "
            "ORDER BY expires_at LIMIT ?",
            (now.isoformat(), int(limit)),
        )
        return [FileRecord.from_document(r) for r in result.rows]

    async def stats(self) -> MetadataStats:
        result = await self.sql.execute(
            "SELECT storage_provider, COUNT(*) AS files, COALESCE(SUM(size), 0) AS size "
            "FROM files GROUP BY storage_provider"
        )
        return _stats_from_groups(result.rows)
