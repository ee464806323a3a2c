from __future__ import annotations
"""
Minimal SQL-over-HTTP clients for the two serverless SQL providers.

  Neon  : POST https://<endpoint-host>/sql           (Neon-Connection-String header)
  Turso : POST https://<db>.turso.io/v2/pipeline     (libsql Hrana-over-HTTP)

Both expose the same surface: `await client.execute(sql, params) -> SqlResult`.
SQL is written with `?` placeholders; the Neon client rewrites them to $1..$n.
"""

import base64
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import httpx

from ..errors import BackendError

_QMARK = re.compile(r"\?")


@dataclass
class SqlResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    affected: int = 0


class SqlHttpClient:
    name: str = "sql"

    def __init__(self, timeout_s: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.timeout_s = timeout_s
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport)

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> SqlResult:
        raise NotImplementedError

    def decode_blob(self, value: Any) -> bytes:
        raise NotImplementedError


class NeonHttpClient(SqlHttpClient):
    name = "neon"

    def __init__(self, database_url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        host = urlparse(database_url).hostname
        if not host:
            raise ValueError("NEON_DATABASE_URL has no host")
        self.database_url = database_url
        self.endpoint = f"https://{host}/sql"

    @staticmethod
    def _numbered(sql: str) -> str:
        counter = iter(range(1, 10_000))
        return _QMARK.sub(lambda _m: f"${next(counter)}", sql)

    @staticmethod
    def _param(value: Any) -> Any:
        if isinstance(value, (bytes, bytearray)):
            return "\\x" + bytes(value).hex()
        if isinstance(value, bool):
            return "true" if value else "false"
        if value is None:
            return None
        return str(value)

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> SqlResult:
        body = {"query": self._numbered(sql), "params": [self._param(p) for p in params]}
        headers = {
            "Neon-Connection-String": self.database_url,
            "Neon-Raw-Text-Output": "true",
            "Content-Type": "application/json",
        }
        async with self._client() as client:
            resp = await client.post(self.endpoint, json=body, headers=headers)
        if resp.status_code >= 400:
            raise BackendError(f"Neon query failed ({resp.status_code}): {resp.text[:200]}", provider=self.name)
        data = resp.json()
        rows = data.get("rows") or []
        return SqlResult(rows=[dict(r) for r in rows], affected=int(data.get("rowCount") or 0))

    def decode_blob(self, value: Any) -> bytes:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        text = str(value or "")
        if text.startswith("\\x"):
            return bytes.fromhex(text[2:])
        return text.encode("latin-1")


class LibsqlHttpClient(SqlHttpClient):
    name = "turso"

    def __init__(self, database_url: str, auth_token: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        parsed = urlparse(database_url)
        scheme = "http" if parsed.scheme == "http" else "https"
        self.endpoint = f"{scheme}://{parsed.netloc}/v2/pipeline"
        self.auth_token = auth_token

    @staticmethod
    def _arg(value: Any) -> Dict[str, Any]:
        if value is None:
            return {"type": "null"}
        if isinstance(value, (bytes, bytearray)):
            return {"type": "blob", "base64": base64.b64encode(bytes(value)).decode("ascii")}
        if isinstance(value, bool):
            return {"type": "integer", "value": "1" if value else "0"}
        if isinstance(value, int):
            return {"type": "integer", "value": str(value)}
        if isinstance(value, float):
            return {"type": "float", "value": value}
        return {"type": "text", "value": str(value)}

    @staticmethod
    def _value(cell: Dict[str, Any]) -> Any:
        kind = cell.get("type")
        if kind == "null":
            return None
        if kind == "integer":
            return int(cell["value"])
        if kind == "float":
            return float(cell["value"])
        if kind == "blob":
            return base64.b64decode(cell.get("base64") or "")
        return cell.get("value")

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> SqlResult:
        body = {
            "requests": [
                {"type": "execute", "stmt": {"sql": sql, "args": [self._arg(p) for p in params]}},
                {"type": "close"},
            ]
        }
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        async with self._client() as client:
            resp = await client.post(self.endpoint, json=body, headers=headers)
        if resp.status_code >= 400:
            raise BackendError(f"Turso query failed ({resp.status_code}): {resp.text[:200]}", provider=self.name)

        first = (resp.json().get("results") or [{}])[0]
        if first.get("type") != "ok":
            message = (first.get("error") or {}).get("message", "unknown error")
            raise BackendError(f"Turso query failed: {message}", provider=self.name)
        result = first["response"]["result"]
        cols = [c.get("name") for c in result.get("cols") or []]
        rows = [
            {name: self._value(cell) for name, cell in zip(cols, row)}
            for row in result.get("rows") or []
        ]
        return SqlResult(rows=rows, affected=int(result.get("affected_row_count") or 0))

    def decode_blob(self, value: Any) -> bytes:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        return base64.b64decode(value or "")
