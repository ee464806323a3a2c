import io
import os
import time
from contextlib import redirect_stderr, redirect_stdout
from unittest import TestCase

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("JWT_SECRET", "test-secret")

from filecdn.issue_admin_token import main  # noqa: E402
from filecdn.security.jwt import verify_token  # noqa: E402


def run(argv):
    out = io.StringIO()
    with redirect_stdout(out):
        main(argv)
    return out.getvalue().strip()


class IssueAdminTokenTests(TestCase):
    def test_prints_a_verifiable_admin_token(self):
        claims = verify_token(run(["ops"]))
        self.assertEqual(claims["sub"], "ops")
        self.assertEqual(claims["role"], "admin")

    def test_ttl_flag(self):
        claims = verify_token(run(["ops", "--ttl", "120"]))
        self.assertLessEqual(claims["exp"] - int(time.time()), 120)
        self.assertEqual(claims["exp"] - claims["iat"], 120)

    def test_subject_is_required(self):
        with self.assertRaises(SystemExit), redirect_stderr(io.StringIO()):
            main([])
