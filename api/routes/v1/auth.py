"""
api/routes/v1/auth.py -- Login, registration and OTP unlock REST endpoints.

Routes:
  POST /api/v1/auth/login        -- password login; returns the account summary
  POST /api/v1/auth/register     -- create an account; 201 / 409 / 400
  POST /api/v1/auth/otp          -- issue and e-mail a one-time password
  POST /api/v1/auth/otp/verify   -- verify a one-time password and unlock
  GET  /api/v1/auth/public-key   -- RSA public key for password encryption

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [H3] POST /otp and /otp/verify are rate-limited per IP (OTP_RATE_LIMIT,
       OTP_VERIFY_RATE_LIMIT) on top of the per-code attempt cap.
  [C1] Unknown email and wrong password return the same payload; the
       orchestrator equalises their timing.
  [M5] Cache-Control: no-store on every response from this router.

Domain errors raised by the orchestrator (ValidationError,
TransientStoreError) are left to the exception handlers in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, OTP_RATE_LIMIT, OTP_VERIFY_RATE_LIMIT, limiter
from api.models import (
    AccountSummary,
    ApiResponse,
    LoginRequest,
    OtpRequest,
    OtpVerifyRequest,
    PublicKeyResponse,
    RegisterRequest,
)
from auth.crypto import CryptoCore
from auth.models import LoginStatus, RegistrationStatus
from auth.orchestrator import AuthOrchestrator

router = APIRouter()


def _respond(envelope: ApiResponse) -> JSONResponse:
    resp = JSONResponse(status_code=envelope.status_code, content=envelope.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.orchestrator


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=ApiResponse)
@limiter.limit(LOGIN_RATE_LIMIT)  # [H2] must be BELOW @router so the router registers the limited function
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and RSA-encrypted password.

    Invalid credentials are a 200 with a Failure envelope. Locked and
    inactive accounts use Settings.locked_status_code.
    """
    result = _orchestrator(request).login(body.email, body.encrypted_password, request.app.state.private_key)
    if result.ok:
        return _respond(
            ApiResponse.success(
                200,
                "Login successful.",
                result.txn,
                AccountSummary.from_account(result.account).model_dump(mode="json"),
            )
        )

    error = result.to_error()
    if result.status is LoginStatus.INVALID_CREDENTIALS:
        return _respond(ApiResponse.failure(200, error))
    status_code = request.app.state.settings.locked_status_code
    return_value = error.to_dict() if result.status is LoginStatus.ACCOUNT_LOCKED else None
    return _respond(ApiResponse.failure(status_code, error, return_value))


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

_REGISTRATION_STATUS = {
    RegistrationStatus.DUPLICATE: 409,
    RegistrationStatus.INVALID_PASSWORD: 400,
}


@router.post("/auth/register", response_model=ApiResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    result = _orchestrator(request).register(
        body.name,
        body.username,
        body.email,
        body.encrypted_password,
        request.app.state.private_key,
    )
    if result.ok:
        return _respond(ApiResponse.success(201, "User registered successfully.", result.txn, {"id": result.user_id}))
    return _respond(ApiResponse.failure(_REGISTRATION_STATUS[result.status], result.to_error()))


# ---------------------------------------------------------------------------
# OTP unlock
# ---------------------------------------------------------------------------


@router.post("/auth/otp", response_model=ApiResponse)
@limiter.limit(OTP_RATE_LIMIT)  # [H3]
def request_otp(request: Request, body: OtpRequest) -> JSONResponse:
    """Send a one-time password to a registered email.

    Always 200: the envelope's response_code and error_code carry the outcome.
    """
    result = _orchestrator(request).request_otp(body.email, body.use_case)
    return _respond(ApiResponse.from_result(200, result))


@router.post("/auth/otp/verify", response_model=ApiResponse)
@limiter.limit(OTP_VERIFY_RATE_LIMIT)  # [H3]
def verify_otp(request: Request, body: OtpVerifyRequest) -> JSONResponse:
    result = _orchestrator(request).verify_otp_and_unlock(body.email, body.otp)
    if result.ok:
        return _respond(ApiResponse.success(200, "Account unlocked.", result.txn, {"status": result.status.value}))
    return _respond(ApiResponse.failure(200, result.to_error(), {"status": result.status.value}))


# ---------------------------------------------------------------------------
# Key distribution
# ---------------------------------------------------------------------------


@router.get("/auth/public-key", response_model=PublicKeyResponse)
def public_key(request: Request) -> PublicKeyResponse:
    """Return the PEM public key clients encrypt passwords with. Public."""
    return PublicKeyResponse(public_key=CryptoCore.public_key_pem(request.app.state.private_key))
