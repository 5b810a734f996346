from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from jose import jwt

from markme.errors import ApiError
from markme.security import (
    create_access_token,
    decode_token,
    ensure_login_attempt_allowed,
    hash_password,
    register_login_failure,
    register_login_success,
    user_id_from_claims,
    verify_admin_credentials,
)
from markme.settings import get_settings


class SecurityTests(unittest.TestCase):
    def setUp(self) -> None:
        self.env = patch.dict(os.environ, {"JWT_SECRET": "jwt-test-secret"}, clear=False)
        self.env.start()
        get_settings.cache_clear()

    def tearDown(self) -> None:
        self.env.stop()
        get_settings.cache_clear()

    def test_access_token_roundtrip(self) -> None:
        token, expires_in, claims = create_access_token(sub="42", role="staff", email="a@example.com")

        decoded = decode_token(token)

        self.assertEqual(expires_in, 24 * 60 * 60)
        self.assertEqual(decoded["sub"], "42")
        self.assertEqual(decoded["jti"], claims["jti"])
        self.assertEqual(user_id_from_claims(decoded), 42)

    def test_expired_token_is_rejected(self) -> None:
        issued = datetime.now(timezone.utc) - timedelta(days=3)
        token, _, _ = create_access_token(sub="42", role="staff", now=issued)

        with self.assertRaises(ApiError) as ctx:
            decode_token(token)
        self.assertEqual(ctx.exception.status_code, 401)

    def test_unknown_role_is_forbidden(self) -> None:
        settings = get_settings()
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode(
            {
                "sub": "1",
                "role": "superuser",
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
                "iat": now,
                "exp": now + 60,
            },
            settings.jwt_secret,
            algorithm="HS256",
        )

        with self.assertRaises(ApiError) as ctx:
            decode_token(token)
        self.assertEqual(ctx.exception.status_code, 403)

    def test_non_numeric_subject_is_not_a_user_id(self) -> None:
        with self.assertRaises(ApiError):
            user_id_from_claims({"sub": "admin"})

    def test_env_admin_credentials_accept_quoted_values(self) -> None:
        pass_hash = hash_password("root-pass")
        with patch.dict(
            os.environ,
            {"ADMIN_EMAIL": '"Root@Example.com"', "ADMIN_PASS_HASH": f"'{pass_hash}'"},
            clear=False,
        ):
            get_settings.cache_clear()
            self.assertTrue(verify_admin_credentials("root@example.com", "root-pass"))
            self.assertFalse(verify_admin_credentials("root@example.com", "wrong"))
            self.assertFalse(verify_admin_credentials("other@example.com", "root-pass"))

    def test_login_throttle_blocks_after_repeated_failures(self) -> None:
        ip = "203.0.113.9"
        for _ in range(10):
            ensure_login_attempt_allowed(ip)
            register_login_failure(ip)

        with self.assertRaises(ApiError) as ctx:
            ensure_login_attempt_allowed(ip)
        self.assertEqual(ctx.exception.status_code, 429)

        register_login_success(ip)
        ensure_login_attempt_allowed(ip)


if __name__ == "__main__":
    unittest.main()
