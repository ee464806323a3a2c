from __future__ import annotations
"""
Cloudinary upload API with signed requests.

storage_path is "<resource_type>:<public_id>" because destroy needs both.
Signature: sha1 of the sorted `k=v` params joined by '&' with the API secret
appended.
"""

import hashlib
import logging
import time
from typing import Any, Dict, Tuple

import httpx

from .base import StorageBackend, StoredObject
from .providers import category_for
from filecdn.errors import BackendError

log = logging.getLogger(__name__)

API_BASE = "https://api.cloudinary.com/v1_1"


def sign_params(params: Dict[str, Any], api_secret: str) -> str:
    to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params) if params[k] not in (None, ""))
    return hashlib.sha1((to_sign + api_secret).encode("utf-8")).hexdigest()


def resource_type_for(mime_type: str) -> str:
    category = category_for(mime_type)
    if category == "image":
        return "image"
    if category in ("video", "audio"):
        # Cloudinary files audio under "video"
        return "video"
    return "raw"


def split_storage_path(storage_path: str) -> Tuple[str, str]:
    resource_type, sep, public_id = storage_path.partition(":")
    if not sep:
        return "image", storage_path
    return resource_type, public_id


class CloudinaryStorage(StorageBackend):
    name = "cloudinary"
    serves_redirect = True

    def __init__(self, cloud_name: str, api_key: str, api_secret: str, folder: str = "", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = folder.strip("/")

    def _signed(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params = {k: v for k, v in params.items() if v not in (None, "")}
        params["timestamp"] = int(time.time())
        signature = sign_params(params, self.api_secret)
        return {**params, "api_key": self.api_key, "signature": signature}

    async def put(self, file_id: str, stored_name: str, data: bytes, mime_type: str) -> StoredObject:
        resource_type = resource_type_for(mime_type)
        form = self._signed({"public_id": file_id, "folder": self.folder})
        url = f"{API_BASE}/{self.cloud_name}/{resource_type}/upload"
        async with self._client() as client:
            resp = await client.post(
                url,
                data={k: str(v) for k, v in form.items()},
                files={"file": (stored_name, data, mime_type)},
            )
        if resp.status_code >= 400:
            raise BackendError(f"Cloudinary upload failed ({resp.status_code}): {resp.text[:200]}", provider=self.name)
        try:
            body = resp.json()
        except ValueError:
            raise BackendError("Cloudinary returned an unreadable upload response", provider=self.name)
        public_id = body.get("public_id") or file_id
        return StoredObject(url=body.get("secure_url") or body.get("url") or "", storage_path=f"{resource_type}:{public_id}")

    async def get(self, storage_path: str) -> bytes:
        # Downloads normally redirect; this exists for tooling that needs the bytes.
        resource_type, public_id = split_storage_path(storage_path)
        url = f"https://res.cloudinary.com/{self.cloud_name}/{resource_type}/upload/{public_id}"
        async with self._client(follow_redirects=True) as client:
            try:
                resp = await client.get(url)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise BackendError(f"Cloudinary fetch failed: {e}", provider=self.name)
        return resp.content

    async def delete(self, storage_path: str) -> bool:
        resource_type, public_id = split_storage_path(storage_path)
        form = self._signed({"public_id": public_id})
        async with self._client() as client:
            resp = await client.post(
                f"{API_BASE}/{self.cloud_name}/{resource_type}/destroy",
                data={k: str(v) for k, v in form.items()},
            )
        if resp.status_code >= 400:
            log.warning("Cloudinary destroy %s failed: %s", public_id, resp.status_code)
            return False
        return resp.json().get("result") == "ok"
