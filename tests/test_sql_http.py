import base64
import json
import os
from unittest import IsolatedAsyncioTestCase

import httpx

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("JWT_SECRET", "test-secret")

from filecdn.db.sql_http import LibsqlHttpClient, NeonHttpClient  # noqa: E402
from filecdn.errors import BackendError  # noqa: E402


class Recorder:
    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = payload or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.payload)

    @property
    def body(self):
        return json.loads(self.requests[-1].content)


class NeonClientTests(IsolatedAsyncioTestCase):
    async def test_query_shape_and_rows(self):
        rec = Recorder(payload={"rows": [{"id": "abc", "size": "10"}], "rowCount": 1})
        client = NeonHttpClient(
            "postgresql://user:pw@ep-cool-1.eu.aws.neon.tech/db",
            transport=httpx.MockTransport(rec),
        )
        result = await client.execute("SELECT * FROM files WHERE id = ? AND size > ?", ["abc", 5])

        request = rec.requests[0]
        self.assertEqual(str(request.url), "https://ep-cool-1.eu.aws.neon.tech/sql")
        self.assertEqual(request.headers["Neon-Connection-String"], "postgresql://user:pw@ep-cool-1.eu.aws.neon.tech/db")
        self.assertEqual(rec.body["query"], "SELECT * FROM files WHERE id = $1 AND size > $2")
        self.assertEqual(rec.body["params"], ["abc", "5"])
        self.assertEqual(result.rows, [{"id": "abc", "size": "10"}])
        self.assertEqual(result.affected, 1)

    async def test_bytes_are_sent_as_hex(self):
        rec = Recorder(payload={"rows": [], "rowCount": 1})
        client = NeonHttpClient("postgresql://u:p@host.neon.tech/db", transport=httpx.MockTransport(rec))
        await client.execute("INSERT INTO file_blobs (data) VALUES (?)", [b"\x00\xff"])
        self.assertEqual(rec.body["params"], ["\\x00ff"])
        self.assertEqual(client.decode_blob("\\x00ff"), b"\x00\xff")

    async def test_http_error(self):
        client = NeonHttpClient(
            "postgresql://u:p@host.neon.tech/db",
            transport=httpx.MockTransport(Recorder(status=500, payload={"message": "boom"})),
        )
        with self.assertRaises(BackendError):
            await client.execute("SELECT 1")

    def test_url_without_host(self):
        with self.assertRaises(ValueError):
            NeonHttpClient("not a url")


class LibsqlClientTests(IsolatedAsyncioTestCase):
    async def test_pipeline_body_and_typed_rows(self):
        payload = {
            "results": [
                {
                    "type": "ok",
                    "response": {
                        "type": "execute",
                        "result": {
                            "cols": [{"name": "id"}, {"name": "size"}, {"name": "data"}, {"name": "expires_at"}],
                            "rows": [[
                                {"type": "text", "value": "abc"},
                                {"type": "integer", "value": "42"},
                                {"type": "blob", "base64": base64.b64encode(b"hi").decode()},
                                {"type": "null"},
                            ]],
                            "affected_row_count": 0,
                        },
                    },
                },
                {"type": "ok", "response": {"type": "close"}},
            ]
        }
        rec = Recorder(payload=payload)
        client = LibsqlHttpClient("libsql://mydb-org.turso.io", "tok", transport=httpx.MockTransport(rec))
        result = await client.execute("SELECT * FROM files WHERE id = ?", ["abc"])

        request = rec.requests[0]
        self.assertEqual(str(request.url), "https://mydb-org.turso.io/v2/pipeline")
        self.assertEqual(request.headers["Authorization"], "Bearer tok")
        self.assertEqual(rec.body["requests"][0]["stmt"]["args"], [{"type": "text", "value": "abc"}])
        self.assertEqual(rec.body["requests"][1], {"type": "close"})
        self.assertEqual(result.rows, [{"id": "abc", "size": 42, "data": b"hi", "expires_at": None}])

    async def test_statement_error(self):
        payload = {"results": [{"type": "error", "error": {"message": "no such table: files"}}]}
        client = LibsqlHttpClient("libsql://mydb.turso.io", transport=httpx.MockTransport(Recorder(payload=payload)))
        with self.assertRaises(BackendError) as ctx:
            await client.execute("SELECT * FROM files")
        self.assertIn("no such table", ctx.exception.detail)
