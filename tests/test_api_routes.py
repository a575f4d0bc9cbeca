"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> AuthOrchestrator ->
CredentialStore -> ApiResponse serialization, through the real app with a
patched lifespan (see conftest.py).

Coverage:
  - Registration: 201 created, 409 duplicate, 400 unreadable password, 422 schema
  - Login: success envelope, invalid-credential envelope, lockout status code
  - OTP: request + verify unlocks a locked account; mismatch; unknown email
    answered like a registered one
  - Rate limit: /otp/verify returns 429 past OTP_VERIFY_RATE_LIMIT
  - Public key endpoint; Cache-Control: no-store
  - Domain ValidationError -> 400, TransientStoreError -> 503

Fixtures used (from conftest.py):
  - api_client: TestClient sharing one in-memory store per module
  - encrypt: encrypts a password with the session's public key
"""

from __future__ import annotations

from unittest.mock import patch

from fastapi.testclient import TestClient

from api.limiter import OTP_VERIFY_RATE_LIMIT, limiter
from core.errors import ErrorCode, TransientStoreError

PASSWORD = "correct-horse"


def _register(client: TestClient, encrypt, email: str, username: str, password: str = PASSWORD):
    return client.post(
        "/api/v1/auth/register",
        json={"name": "Test", "username": username, "email": email, "encrypted_password": encrypt(password)},
    )


def _login(client: TestClient, encrypt, email: str, password: str = PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "encrypted_password": encrypt(password)})


class TestRegisterRoute:
    def test_register_created(self, api_client: TestClient, encrypt) -> None:
        resp = _register(api_client, encrypt, "reg1@example.com", "reg1")
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["status"] == "Success"
        assert data["response_code"] == 1
        assert data["return_value"]["id"] > 0
        assert data["txn"]

    def test_register_duplicate(self, api_client: TestClient, encrypt) -> None:
        _register(api_client, encrypt, "reg2@example.com", "reg2")
        resp = _register(api_client, encrypt, "reg2@example.com", "reg2-other")
        assert resp.status_code == 409
        assert resp.json()["error_code"] == ErrorCode.ADD_USER_DUPLICATE

    def test_register_unreadable_password(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/auth/register",
            json={"username": "reg3", "email": "reg3@example.com", "encrypted_password": "garbage"},
        )
        assert resp.status_code == 400
        assert resp.json()["error_code"] == ErrorCode.ADD_USER_FAILED

    def test_register_missing_field(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/register", json={"email": "reg4@example.com"})
        assert resp.status_code == 422
        assert resp.json()["status"] == "Failure"
        assert resp.json()["error_code"] == ErrorCode.MODEL_VALIDATION


class TestLoginRoute:
    def test_login_success(self, api_client: TestClient, encrypt) -> None:
        _register(api_client, encrypt, "login1@example.com", "login1")
        resp = _login(api_client, encrypt, "login1@example.com")
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["status"] == "Success"
        assert data["return_value"]["email"] == "login1@example.com"
        assert "password_hash" not in data["return_value"]
        assert "salt" not in data["return_value"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_login_invalid_credentials(self, api_client: TestClient, encrypt) -> None:
        _register(api_client, encrypt, "login2@example.com", "login2")
        wrong = _login(api_client, encrypt, "login2@example.com", "wrong-password").json()
        unknown = _login(api_client, encrypt, "ghost@example.com").json()
        assert wrong["status"] == "Failure"
        assert wrong["error_code"] == ErrorCode.LOGIN_INVALID_CREDENTIALS
        wrong.pop("txn")
        unknown.pop("txn")
        assert wrong == unknown

    def test_login_locked_after_threshold(self, api_client: TestClient, encrypt) -> None:
        _register(api_client, encrypt, "login3@example.com", "login3")
        for _ in range(5):
            _login(api_client, encrypt, "login3@example.com", "wrong-password")
        resp = _login(api_client, encrypt, "login3@example.com")
        assert resp.status_code == 403
        data = resp.json()
        assert data["error_code"] == ErrorCode.LOGIN_ACCOUNT_LOCKED
        assert data["return_value"]["locked_until"]

    def test_login_malformed_email_is_400(self, api_client: TestClient, encrypt) -> None:
        resp = _login(api_client, encrypt, "not-an-email")
        assert resp.status_code == 400
        assert resp.json()["error_code"] == ErrorCode.MODEL_VALIDATION

    def test_store_failure_is_503(self, api_client: TestClient, encrypt) -> None:
        store = api_client.app.state.store
        with patch.object(store, "find_by_email", side_effect=TransientStoreError("OperationalError: locked")):
            resp = _login(api_client, encrypt, "login4@example.com")
        assert resp.status_code == 503
        data = resp.json()
        assert data["error_code"] == ErrorCode.STORE_UNAVAILABLE
        assert "OperationalError" not in data["error_message"]


class TestOtpRoutes:
    def test_unlock_flow(self, api_client: TestClient, encrypt) -> None:
        _register(api_client, encrypt, "otp1@example.com", "otp1")
        for _ in range(5):
            _login(api_client, encrypt, "otp1@example.com", "wrong-password")
        assert _login(api_client, encrypt, "otp1@example.com").status_code == 403

        resp = api_client.post("/api/v1/auth/otp", json={"email": "otp1@example.com"})
        assert resp.status_code == 200
        assert resp.json()["success_message"] == "OTP sent successfully on email 'otp1@example.com'."

        otp = api_client.app.state.notifier.last_otp()
        resp = api_client.post("/api/v1/auth/otp/verify", json={"email": "otp1@example.com", "otp": otp})
        assert resp.status_code == 200
        assert resp.json()["return_value"]["status"] == "unlocked"

        assert _login(api_client, encrypt, "otp1@example.com").status_code == 200

    def test_verify_mismatch(self, api_client: TestClient, encrypt) -> None:
        _register(api_client, encrypt, "otp2@example.com", "otp2")
        api_client.post("/api/v1/auth/otp", json={"email": "otp2@example.com"})
        otp = api_client.app.state.notifier.last_otp()
        wrong = str((int(otp) + 1) % 10**6).zfill(6)
        resp = api_client.post("/api/v1/auth/otp/verify", json={"email": "otp2@example.com", "otp": wrong})
        data = resp.json()
        assert data["status"] == "Failure"
        assert data["error_code"] == ErrorCode.OTP_MISMATCH
        assert data["return_value"]["status"] == "mismatch"

    def test_request_otp_unknown_email_looks_like_success(self, api_client: TestClient) -> None:
        notifier = api_client.app.state.notifier
        sent_before = len(notifier.sent)
        resp = api_client.post("/api/v1/auth/otp", json={"email": "ghost@example.com"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "Success"
        assert data["success_message"] == "OTP sent successfully on email 'ghost@example.com'."
        assert len(notifier.sent) == sent_before


class TestRateLimits:
    def test_otp_verify_is_rate_limited(self, api_client: TestClient) -> None:
        allowed = int(OTP_VERIFY_RATE_LIMIT.split("/")[0])
        limiter.reset()
        try:
            statuses = [
                api_client.post(
                    "/api/v1/auth/otp/verify", json={"email": "limited@example.com", "otp": "123456"}
                ).status_code
                for _ in range(allowed + 1)
            ]
            blocked = api_client.post("/api/v1/auth/otp/verify", json={"email": "limited@example.com", "otp": "123456"})
        finally:
            limiter.reset()
        assert statuses[:allowed] == [200] * allowed
        assert statuses[allowed] == 429
        assert blocked.status_code == 429
        assert blocked.json()["status"] == "Failure"
        assert "Retry-After" in blocked.headers


class TestPublicKeyRoute:
    def test_returns_public_pem(self, api_client: TestClient, public_key_pem: str) -> None:
        resp = api_client.get("/api/v1/auth/public-key")
        assert resp.status_code == 200
        assert resp.json()["public_key"] == public_key_pem
