from __future__ import annotations
import logging
from typing import Any, Optional
from urllib.parse import quote

from .base import StorageBackend, StoredObject
from filecdn.errors import BackendError

log = logging.getLogger(__name__)


class SupabaseStorage(StorageBackend):
    """Supabase Storage REST API; one bucket, objects keyed `<id>/<stored_name>`."""

    name = "supabase"
    serves_redirect = False

    def __init__(self, url: str, service_key: str, bucket: str = "files", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.base = url.rstrip("/") + "/storage/v1"
        self.service_key = service_key
        self.bucket = bucket

    def _headers(self, content_type: Optional[str] = None) -> dict:
        h = {"apikey": self.service_key, "Authorization": f"Bearer {self.service_key}"}
        if content_type:
            h["Content-Type"] = content_type
        return h

    def public_url(self, path: str) -> str:
        return f"{self.base}/object/public/{self.bucket}/{quote(path)}"

    async def put(self, file_id: str, stored_name: str, data: bytes, mime_type: str) -> StoredObject:
        path = f"{file_id}/{stored_name}"
        headers = self._headers(mime_type)
        headers["x-upsert"] = "true"
        async with self._client() as client:
            resp = await client.post(f"{self.base}/object/{self.bucket}/{quote(path)}", content=data, headers=headers)
        if resp.status_code >= 400:
            raise BackendError(f"Supabase upload failed ({resp.status_code}): {resp.text[:200]}", provider=self.name)
        return StoredObject(url=self.public_url(path), storage_path=path)

    async def get(self, storage_path: str) -> bytes:
        async with self._client() as client:
            resp = await client.get(f"{self.base}/object/{self.bucket}/{quote(storage_path)}", headers=self._headers())
        if resp.status_code == 404:
            raise BackendError("Object missing from Supabase storage", provider=self.name)
        if resp.status_code >= 400:
            raise BackendError(f"Supabase download failed ({resp.status_code})", provider=self.name)
        return resp.content

    async def delete(self, storage_path: str) -> bool:
        async with self._client() as client:
            resp = await client.request(
                "DELETE",
                f"{self.base}/object/{self.bucket}",
                json={"prefixes": [storage_path]},
                headers=self._headers("application/json"),
            )
        if resp.status_code >= 400:
            log.warning("Supabase delete %s failed: %s %s", storage_path, resp.status_code, resp.text[:200])
            return False
        return True
