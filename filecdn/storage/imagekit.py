from __future__ import annotations
import base64
import logging
from typing import Any

import httpx

from .base import StorageBackend, StoredObject
from filecdn.errors import BackendError

log = logging.getLogger(__name__)

UPLOAD_URL = "https://upload.imagekit.io/api/v1/files/upload"
FILES_URL = "https://api.imagekit.io/v1/files"


class ImageKitStorage(StorageBackend):
    """ImageKit media API. storage_path is the ImageKit fileId."""

    name = "imagekit"
    serves_redirect = True

    def __init__(self, private_key: str, folder: str = "/", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.private_key = private_key
        self.folder = folder or "/"

    def _auth(self) -> dict:
        token = base64.b64encode(f"{self.private_key}:".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    async def put(self, file_id: str, stored_name: str, data: bytes, mime_type: str) -> StoredObject:
        form = {
            "fileName": stored_name,
            "folder": self.folder,
            "useUniqueFileName": "false",
        }
        async with self._client() as client:
            resp = await client.post(
                UPLOAD_URL,
                data=form,
                files={"file": (stored_name, data, mime_type)},
                headers=self._auth(),
            )
        if resp.status_code >= 400:
            raise BackendError(f"ImageKit upload failed ({resp.status_code}): {resp.text[:200]}", provider=self.name)
        try:
            body = resp.json()
        except ValueError:
            raise BackendError("ImageKit returned an unreadable upload response", provider=self.name)
        return StoredObject(url=body.get("url") or "", storage_path=body.get("fileId") or "")

    async def get(self, storage_path: str) -> bytes:
        async with self._client(follow_redirects=True) as client:
            try:
                meta = await client.get(f"{FILES_URL}/{storage_path}/details", headers=self._auth())
                meta.raise_for_status()
                resp = await client.get(meta.json()["url"])
                resp.raise_for_status()
            except (httpx.HTTPError, KeyError) as e:
                raise BackendError(f"ImageKit fetch failed: {e}", provider=self.name)
        return resp.content

    async def delete(self, storage_path: str) -> bool:
        if not storage_path:
            return False
        async with self._client() as client:
            resp = await client.delete(f"{FILES_URL}/{storage_path}", headers=self._auth())
        if resp.status_code >= 400:
            log.warning("ImageKit delete %s failed: %s", storage_path, resp.status_code)
            return False
        return True
