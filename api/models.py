"""
API request and response models for the Ayerhs authentication endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Every response, success or failure, uses the ApiResponse envelope so clients
parse one schema regardless of status code.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account, BaseResult, OtpUseCase
from core.errors import AuthError

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    encrypted_password is the base64 RSA/PKCS#1 v1.5 ciphertext of the
    password, encrypted with the key from GET /api/v1/auth/public-key.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    encrypted_password: str = Field(min_length=1, max_length=4096)


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(default="", max_length=255)
    username: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    encrypted_password: str = Field(min_length=1, max_length=4096)


class OtpRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    use_case: OtpUseCase = OtpUseCase.LOGIN_UNLOCK


class OtpVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    otp: str = Field(min_length=1, max_length=16)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountSummary(BaseModel):
    """Public view of an Account. Never carries the hash or salt."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    name: str
    username: str
    email: str
    role_id: int
    last_login: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            user_id=account.user_id,
            name=account.name,
            username=account.username,
            email=account.email,
            role_id=int(account.role_id),
            last_login=account.last_login,
        )


class ApiResponse(BaseModel):
    """Uniform response envelope.

    status is "Success" or "Failure"; status_code repeats the HTTP status;
    response_code is 1 on success and -1 on failure.
    """

    status: str
    status_code: int
    response_code: int
    success_message: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    txn: Optional[str] = None
    return_value: Any = None

    @classmethod
    def success(cls, status_code: int, message: str, txn: str, return_value: Any = None) -> "ApiResponse":
        return cls(
            status="Success",
            status_code=status_code,
            response_code=1,
            success_message=message,
            txn=txn,
            return_value=return_value,
        )

    @classmethod
    def failure(cls, status_code: int, error: AuthError, return_value: Any = None) -> "ApiResponse":
        return cls(
            status="Failure",
            status_code=status_code,
            response_code=-1,
            error_message=error.message,
            error_code=error.error_code,
            txn=error.txn,
            return_value=return_value,
        )

    @classmethod
    def from_result(cls, status_code: int, result: BaseResult) -> "ApiResponse":
        return cls(
            status="Success" if result.ok else "Failure",
            status_code=status_code,
            response_code=result.status,
            success_message=result.success_message,
            error_message=result.error_message,
            error_code=result.error_code,
            txn=result.txn,
        )


class PublicKeyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    public_key: str
    padding: str = "PKCS1v15"


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}
