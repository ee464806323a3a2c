from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx


@dataclass
class StoredObject:
    """Where a blob landed: public URL (may be empty) and backend-specific path."""

    url: str
    storage_path: str


class StorageBackend(ABC):
    """Blob store behind one provider id."""

    name: str = ""
    # True: downloads redirect to `url`; False: bytes are streamed by us
    serves_redirect: bool = False

    def __init__(self, timeout_s: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.timeout_s = timeout_s
        self._transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport, **kwargs)

    @abstractmethod
    async def put(self, file_id: str, stored_name: str, data: bytes, mime_type: str) -> StoredObject:
        ...

    @abstractmethod
    async def get(self, storage_path: str) -> bytes:
        ...

    @abstractmethod
    async def delete(self, storage_path: str) -> bool:
        ...
