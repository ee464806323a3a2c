import os
from datetime import timedelta
from unittest import TestCase
from unittest.mock import AsyncMock, patch

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("JWT_SECRET", "test-secret")

from fastapi.testclient import TestClient  # noqa: E402

from filecdn.main import app  # noqa: E402
from filecdn.metadata.store import MetadataStore, get_metadata_store  # noqa: E402
from filecdn.models import FileRecord, utcnow  # noqa: E402
from filecdn.security.blocklist import Blocklist  # noqa: E402
from filecdn.security.deps import get_security_gate  # noqa: E402
from filecdn.security.gate import SecurityGate  # noqa: E402
from filecdn.security.jwt import issue_admin_token  # noqa: E402
from filecdn.security.rate_limit import WindowLimiter  # noqa: E402
from filecdn.services.notifications import Notifier, get_notifier  # noqa: E402
from filecdn.storage.factory import get_backend_lookup  # noqa: E402

from fakes import BROWSER_UA, FakeBackend, FakeReplica, lookup_for  # noqa: E402

PNG = (
    b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01"
    b"\x08\x06\x00\x00\x00\x1f\x15\xc4\x89\x00\x00\x00\rIDATx\x9cc\xf8\x0f\x00"
    b"\x00\x01\x01\x00\x05\x18\xd8N\x00\x00\x00\x00IEND\xaeB`\x82"
)
EXE = b"MZ\x90\x00\x03\x00\x00\x00\x04\x00\x00\x00\xff\xff\x00\x00" + b"\x00" * 48


class RouteTestCase(TestCase):
    rate_points = 100

    def setUp(self):
        self.replicas = [FakeReplica("mongodb"), FakeReplica("neon")]
        self.store = MetadataStore(self.replicas)
        self.backends = {"supabase": FakeBackend("supabase")}
        self.gate = SecurityGate(WindowLimiter(self.rate_points, 60), Blocklist())

        app.dependency_overrides[get_metadata_store] = lambda: self.store
        app.dependency_overrides[get_backend_lookup] = lambda: lookup_for(self.backends)
        app.dependency_overrides[get_security_gate] = lambda: self.gate
        app.dependency_overrides[get_notifier] = lambda: Notifier()
        self.client = TestClient(app, headers={"User-Agent": BROWSER_UA})

    def tearDown(self):
        app.dependency_overrides.clear()

    def upload(self, *files):
        return self.client.post("/api/upload", files=[("files", f) for f in files])

    def admin_headers(self, role="admin"):
        return {"Authorization": f"Bearer {issue_admin_token('ops', role=role)}"}


class UploadRouteTests(RouteTestCase):
    def test_upload_then_info_then_download(self):
        resp = self.upload(("a.txt", b"hello 1234", "text/plain"))
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertIn("author", body)
        self.assertEqual(body["message"], "Successfully uploaded 1 of 1 files")
        item = body["data"][0]
        self.assertEqual((item["filename"], item["size"], item["dbType"]), ("a.txt", 10, "supabase"))
        file_id = item["id"]
        self.assertEqual(len(file_id), 12)

        info = self.client.get(f"/files/{file_id}").json()["data"]
        self.assertEqual(info["name"], "a.txt")
        self.assertEqual(info["mimeType"], "text/plain")
        self.assertEqual(info["downloads"], 0)
        self.assertTrue(info["downloadUrl"].endswith(f"/files/{file_id}/download"))

        download = self.client.get(f"/files/{file_id}/download")
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.content, b"hello 1234")
        self.assertTrue(download.headers["content-disposition"].startswith("attachment;"))
        self.assertIn("immutable", download.headers["cache-control"])

        self.assertEqual(self.client.get(f"/files/{file_id}").json()["data"]["downloads"], 1)
        self.assertEqual(self.replicas[1].rows[file_id].downloads, 1)

    def test_rejected_file_never_reaches_a_backend(self):
        resp = self.upload(("virus.exe", EXE, "application/x-msdownload"))
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])
        self.assertIn("security", resp.json()["error"])
        self.assertEqual(self.backends["supabase"].blobs, {})
        self.assertEqual(self.replicas[0].rows, {})

    def test_one_bad_file_rejects_the_batch(self):
        resp = self.upload(("a.txt", b"hello 1234", "text/plain"), ("virus.exe", EXE, "application/x-msdownload"))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.backends["supabase"].blobs, {})

    def test_no_files(self):
        resp = self.client.post("/api/upload")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "No files provided")

    def test_too_many_files_blocks_the_client(self):
        files = [(f"f{i}.txt", b"hello 1234", "text/plain") for i in range(6)]
        resp = self.upload(*files)
        self.assertEqual(resp.status_code, 400)
        self.assertIn("Maximum 5", resp.json()["error"])

        again = self.upload(("a.txt", b"hello 1234", "text/plain"))
        self.assertEqual(again.status_code, 403)

    def test_cli_user_agent_is_refused(self):
        resp = self.client.post(
            "/api/upload",
            files=[("files", ("a.txt", b"hello 1234", "text/plain"))],
            headers={"User-Agent": "curl/8.4.0"},
        )
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["error"], "Security violation detected")

    def test_partial_failure(self):
        self.backends["cloudinary"] = FakeBackend("cloudinary", serves_redirect=True, fail=True)
        resp = self.upload(("a.txt", b"hello 1234", "text/plain"), ("pixel.png", PNG, "image/png"))
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertEqual(len(body["data"]), 1)
        self.assertEqual(body["message"], "Successfully uploaded 1 of 2 files")
        self.assertEqual(body["failures"][0]["filename"], "pixel.png")
        self.assertEqual(body["failures"][0]["dbType"], "cloudinary")

    def test_unexpected_backend_error_is_a_per_file_failure(self):
        class Garbled(FakeBackend):
            async def put(self, file_id, stored_name, data, mime_type):
                raise ValueError("Expecting value")

        self.backends["cloudinary"] = Garbled("cloudinary", serves_redirect=True)
        resp = self.upload(("a.txt", b"hello 1234", "text/plain"), ("pixel.png", PNG, "image/png"))
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertEqual([d["filename"] for d in body["data"]], ["a.txt"])
        self.assertEqual(body["failures"][0]["dbType"], "cloudinary")
        self.assertIn(body["data"][0]["id"], self.replicas[0].rows)

    def test_all_backends_failing(self):
        self.backends["supabase"] = FakeBackend("supabase", fail=True)
        resp = self.upload(("a.txt", b"hello 1234", "text/plain"))
        self.assertEqual(resp.status_code, 502)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertEqual(len(body["failures"]), 1)

    def test_redirecting_backend(self):
        self.backends["cloudinary"] = FakeBackend("cloudinary", serves_redirect=True)
        file_id = self.upload(("pixel.png", PNG, "image/png")).json()["data"][0]["id"]

        resp = self.client.get(f"/files/{file_id}/download", follow_redirects=False)
        self.assertEqual(resp.status_code, 307)
        self.assertTrue(resp.headers["location"].startswith("https://cdn.example/"))
        self.assertEqual(self.replicas[0].rows[file_id].downloads, 1)

    def test_security_headers(self):
        resp = self.client.get("/files/abcdef123456/status")
        self.assertEqual(resp.headers["x-frame-options"], "DENY")
        self.assertEqual(resp.headers["x-content-type-options"], "nosniff")


class UrlUploadRouteTests(RouteTestCase):
    def test_stores_fetched_file(self):
        fetch = AsyncMock(return_value=(b"hello 1234", "notes.txt", "text/plain"))
        with patch("filecdn.routes.upload.fetch_remote", fetch):
            resp = self.client.post("/api/upload/url", json={"url": "https://example.com/notes.txt"})
        self.assertEqual(resp.status_code, 200, resp.text)
        data = resp.json()["data"]
        self.assertEqual(data["filename"], "notes.txt")
        fetch.assert_awaited_once_with("https://example.com/notes.txt")
        self.assertEqual(self.replicas[0].rows[data["id"]].source_url, "https://example.com/notes.txt")

    def test_invalid_url(self):
        resp = self.client.post("/api/upload/url", json={"url": "ftp://example.com/x"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Invalid URL format")

    def test_missing_url(self):
        resp = self.client.post("/api/upload/url", json={})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("url", resp.json()["error"])


class FileRouteTests(RouteTestCase):
    def test_unknown_file(self):
        resp = self.client.get("/files/abcdef123456")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"], "File not found")

    def test_status_of_unknown_file_is_not_an_error(self):
        resp = self.client.get("/files/abcdef123456/status")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["status"], "not_found")

    def test_malformed_id_blocks_the_client(self):
        resp = self.client.get("/files/abc")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Invalid file ID")

        again = self.client.get("/files/abcdef123456")
        self.assertEqual(again.status_code, 403)

    def test_malformed_id_on_status_does_not_block(self):
        self.assertEqual(self.client.get("/files/abc/status").status_code, 400)
        self.assertEqual(self.client.get("/files/abcdef123456/status").status_code, 200)


class RateLimitRouteTests(RouteTestCase):
    rate_points = 2

    def test_budget_exhausted(self):
        for _ in range(2):
            self.assertEqual(self.client.get("/api/stats").status_code, 200)
        resp = self.client.get("/api/stats")
        self.assertEqual(resp.status_code, 429)
        self.assertGreaterEqual(int(resp.headers["retry-after"]), 1)
        self.assertIn("Rate limit exceeded", resp.json()["error"])

    def test_budgets_are_per_endpoint(self):
        for _ in range(3):
            self.client.get("/api/stats")
        self.assertEqual(self.client.get("/files/abcdef123456/status").status_code, 200)


class StatsRouteTests(RouteTestCase):
    def test_totals(self):
        self.upload(("a.txt", b"hello 1234", "text/plain"))
        data = self.client.get("/api/stats").json()["data"]
        self.assertEqual(data["totalFiles"], 1)
        self.assertEqual(data["totalSize"], "10 Bytes")
        self.assertEqual(data["databases"], 2)
        self.assertEqual(data["databaseBreakdown"]["supabase"], {"files": 1, "size": 10})
        self.assertRegex(data["uptime"], r"^\d+d \d+h \d+m$")


class AdminRouteTests(RouteTestCase):
    def test_cleanup_requires_admin(self):
        self.assertEqual(self.client.post("/api/admin/cleanup").status_code, 401)
        resp = self.client.post("/api/admin/cleanup", headers=self.admin_headers(role="viewer"))
        self.assertEqual(resp.status_code, 403)

    def test_cleanup_removes_expired(self):
        expired = FileRecord(
            id="deadbeef0001",
            filename="old.txt",
            original_name="old.txt",
            stored_name="deadbeef0001.txt",
            size=3,
            mime_type="text/plain",
            hash="0" * 64,
            storage_provider="supabase",
            storage_path="deadbeef0001/deadbeef0001.txt",
            expires_at=utcnow() - timedelta(days=1),
        )
        for replica in self.replicas:
            replica.rows[expired.id] = expired
        self.backends["supabase"].blobs[expired.storage_path] = b"old"

        resp = self.client.post("/api/admin/cleanup", headers=self.admin_headers())
        self.assertEqual(resp.status_code, 200, resp.text)
        data = resp.json()["data"]
        self.assertEqual((data["expired"], data["deleted"]), (1, 1))
        self.assertTrue(data["executionTime"].endswith("ms"))
        self.assertEqual(self.backends["supabase"].blobs, {})
        self.assertEqual(self.replicas[1].rows, {})

    def test_blocklist_management(self):
        headers = self.admin_headers()
        resp = self.client.post("/api/admin/blocklist", json={"ip": "9.9.9.9", "reason": "abuse"}, headers=headers)
        self.assertEqual(resp.status_code, 200)

        listed = self.client.get("/api/admin/blocklist", headers=headers).json()["data"]
        self.assertEqual([e["ip"] for e in listed["items"]], ["9.9.9.9"])

        self.assertEqual(self.client.delete("/api/admin/blocklist/9.9.9.9", headers=headers).status_code, 200)
        self.assertEqual(self.client.delete("/api/admin/blocklist/9.9.9.9", headers=headers).status_code, 404)

    def test_blocked_ip_is_refused_on_admin_routes(self):
        self.assertEqual(self.client.get("/files/abc").status_code, 400)

        headers = self.admin_headers()
        self.assertEqual(self.client.post("/api/admin/cleanup", headers=headers).status_code, 403)
        self.assertEqual(self.client.get("/api/admin/blocklist", headers=headers).status_code, 403)
        resp = self.client.post("/api/admin/blocklist", json={"ip": "9.9.9.9", "reason": "abuse"}, headers=headers)
        self.assertEqual(resp.status_code, 403)


class AdminRateLimitTests(RouteTestCase):
    rate_points = 2

    def test_admin_routes_share_the_rate_budget(self):
        headers = self.admin_headers()
        for _ in range(2):
            self.assertEqual(self.client.get("/api/admin/blocklist", headers=headers).status_code, 200)
        self.assertEqual(self.client.get("/api/admin/blocklist", headers=headers).status_code, 429)
        self.assertEqual(self.client.post("/api/admin/cleanup", headers=headers).status_code, 200)
