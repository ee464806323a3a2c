from __future__ import annotations
import logging
from typing import Any

from .base import StorageBackend, StoredObject
from filecdn.db.sql_http import SqlHttpClient
from filecdn.errors import BackendError

log = logging.getLogger(__name__)

BLOB_TYPES = {"neon": "BYTEA", "turso": "BLOB"}


class SqlBlobStorage(StorageBackend):
    """Bytes kept in a `file_blobs` table of a serverless SQL database."""

    serves_redirect = False

    def __init__(self, sql: SqlHttpClient, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.sql = sql
        self.name = sql.name

    async def ensure_schema(self) -> None:
        blob_type = BLOB_TYPES.get(self.name, "BLOB")
        await self.sql.execute(
            "CREATE TABLE IF NOT EXISTS file_blobs ("
            "id TEXT PRIMARY KEY, stored_name TEXT NOT NULL, mime_type TEXT, "
            f"data {blob_type} NOT NULL, created_at TEXT)"
        )

    async def put(self, file_id: str, stored_name: str, data: bytes, mime_type: str) -> StoredObject:
        await self.sql.execute(
            "INSERT INTO file_blobs (id, stored_name, mime_type, data, created_at) "
            "VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)",
            (file_id, stored_name, mime_type, data),
        )
        # no public URL; downloads stream through the API
        return StoredObject(url="", storage_path=file_id)

    async def get(self, storage_path: str) -> bytes:
        result = await self.sql.execute("SELECT data FROM file_blobs WHERE id = ?", (storage_path,))
        if not result.rows:
            raise BackendError(f"Blob {storage_path} missing from {self.name}", provider=self.name)
        return self.sql.decode_blob(result.rows[0].get("data"))

    async def delete(self, storage_path: str) -> bool:
        result = await self.sql.execute("DELETE FROM file_blobs WHERE id = ?", (storage_path,))
        return result.affected > 0
