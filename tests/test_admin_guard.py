import os
import time
from unittest import IsolatedAsyncioTestCase

import jwt
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

# Minimal env so pydantic Settings can load during imports
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB", "testdb")
os.environ.setdefault("JWT_SECRET", "test-secret")

from filecdn.config import settings  # noqa: E402
from filecdn.security import deps  # noqa: E402
from filecdn.security.jwt import ALGORITHM, issue_admin_token, verify_token  # noqa: E402


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TokenTests(IsolatedAsyncioTestCase):
    async def test_issue_and_verify(self):
        payload = verify_token(issue_admin_token("ops@example.com", ttl_seconds=60))
        self.assertEqual(payload["sub"], "ops@example.com")
        self.assertEqual(payload["role"], "admin")
        self.assertEqual(payload["exp"] - payload["iat"], 60)

    async def test_non_positive_ttl_falls_back(self):
        payload = verify_token(issue_admin_token("ops", ttl_seconds=0))
        self.assertGreater(payload["exp"] - payload["iat"], 0)

    async def test_foreign_issuer_rejected(self):
        now = int(time.time())
        token = jwt.encode(
            {"iss": "someone-else", "sub": "x", "role": "admin", "iat": now, "exp": now + 60},
            settings.jwt_secret,
            algorithm=ALGORITHM,
        )
        with self.assertRaises(jwt.InvalidIssuerError):
            verify_token(token)


class AdminGuardTests(IsolatedAsyncioTestCase):
    async def test_missing_credentials(self):
        with self.assertRaises(HTTPException) as ctx:
            await deps.auth_admin(None)
        self.assertEqual(ctx.exception.status_code, 401)

    async def test_garbage_token(self):
        with self.assertRaises(HTTPException) as ctx:
            await deps.auth_admin(_bearer("not-a-jwt"))
        self.assertEqual(ctx.exception.status_code, 401)

    async def test_expired_token(self):
        now = int(time.time())
        token = jwt.encode(
            {"iss": "filecdn", "sub": "ops", "role": "admin", "iat": now - 120, "exp": now - 60},
            settings.jwt_secret,
            algorithm=ALGORITHM,
        )
        with self.assertRaises(HTTPException) as ctx:
            await deps.auth_admin(_bearer(token))
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("ExpiredSignatureError", ctx.exception.detail)

    async def test_non_admin_role_is_forbidden(self):
        ctx = await deps.auth_admin(_bearer(issue_admin_token("viewer", role="viewer")))
        with self.assertRaises(HTTPException) as err:
            await deps.admin_guard(ctx)
        self.assertEqual(err.exception.status_code, 403)

    async def test_admin_passes(self):
        ctx = await deps.auth_admin(_bearer(issue_admin_token("ops")))
        self.assertIs(await deps.admin_guard(ctx), ctx)
        self.assertEqual(ctx.sub, "ops")
