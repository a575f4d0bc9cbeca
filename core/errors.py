"""
core/errors.py -- Domain error taxonomy, error codes, and correlation ids.

Every error carries an error code and a correlation id (txn) so a failure
reported to a client can be matched to the single log line written for it.

Taxonomy:
  ValidationError      malformed input; the caller must fix the request.
  CredentialError      wrong password or OTP; intentionally low-information.
  LockoutError         account locked; carries the unlock time.
  NotFoundError        missing account or OTP record. An unknown email is
                       never reported as such: login answers with a
                       credential failure and OTP requests with the usual
                       success, to prevent account enumeration.
  TransientStoreError  persistence failure; safe for the caller to retry.
  CryptoError          key or padding failure; always mapped to a credential
                       failure before reaching the caller.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone


def new_txn() -> str:
    """Return a correlation id: yyyyMMddHHmmssfff in UTC plus a random hex suffix.

    The suffix keeps ids distinct for requests landing in the same millisecond.
    """
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")[:-3]
    return f"{stamp}-{secrets.token_hex(3)}"


class ErrorCode:
    # Account management: ERR-1000-xxx
    LOGIN_INVALID_CREDENTIALS = "ERR-1000-001"
    LOGIN_ACCOUNT_LOCKED = "ERR-1000-002"
    LOGIN_ACCOUNT_INACTIVE = "ERR-1000-003"
    ADD_USER_DUPLICATE = "ERR-1000-004"
    ADD_USER_FAILED = "ERR-1000-005"
    ACCOUNT_NOT_FOUND = "ERR-1000-006"
    MODEL_VALIDATION = "ERR-1000-900"

    # OTP: ERR-2000-xxx
    OTP_GENERATION_FAILED = "ERR-2000-001"
    OTP_DELIVERY_FAILED = "ERR-2000-002"
    OTP_MISMATCH = "ERR-2000-003"
    OTP_EXPIRED = "ERR-2000-004"
    OTP_NOT_FOUND = "ERR-2000-005"

    # Store: ERR-3000-xxx
    STORE_UNAVAILABLE = "ERR-3000-001"
    STORE_CONTENTION = "ERR-3000-002"
    STORE_DUPLICATE = "ERR-3000-003"

    # Crypto / generic: ERR-9000-xxx
    CRYPTO_FAILURE = "ERR-9000-001"
    INTERNAL = "ERR-9000-999"


class AuthError(Exception):
    """Base class for all domain errors."""

    default_code = ErrorCode.INTERNAL

    def __init__(self, message: str, error_code: str | None = None, txn: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.txn = txn or new_txn()

    def to_dict(self) -> dict:
        """Caller-safe representation: message, code, txn. Never a traceback."""
        return {"code": self.error_code, "message": self.message, "txn": self.txn}


class ValidationError(AuthError):
    default_code = ErrorCode.MODEL_VALIDATION


class CredentialError(AuthError):
    default_code = ErrorCode.LOGIN_INVALID_CREDENTIALS


class LockoutError(AuthError):
    default_code = ErrorCode.LOGIN_ACCOUNT_LOCKED

    def __init__(
        self,
        message: str,
        locked_until: datetime | None = None,
        error_code: str | None = None,
        txn: str | None = None,
    ) -> None:
        super().__init__(message, error_code, txn)
        self.locked_until = locked_until

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["locked_until"] = self.locked_until.isoformat() if self.locked_until else None
        return data


class NotFoundError(AuthError):
    default_code = ErrorCode.ACCOUNT_NOT_FOUND


class TransientStoreError(AuthError):
    default_code = ErrorCode.STORE_UNAVAILABLE


class CryptoError(AuthError):
    default_code = ErrorCode.CRYPTO_FAILURE
