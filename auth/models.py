"""
auth/models.py -- Domain dataclasses and outcome types for authentication.

Pattern: Data class (pure data container, near-zero logic). The store maps
rows to these; the orchestrator mutates them and hands them back to the store.

Outcome types (LoginResult, UnlockResult, RegistrationResult, BaseResult) are
tagged variants: expected outcomes such as a wrong password or a locked
account are values, not exceptions. Exceptions are reserved for failures the
caller could not have prevented (store unreachable, programming errors).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum

from core.errors import (
    AuthError,
    CredentialError,
    ErrorCode,
    LockoutError,
    NotFoundError,
    ValidationError,
)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleId(IntEnum):
    VIEWER = 0
    USER = 1
    ADMIN = 2
    SUPER_ADMIN = 3


class OtpUseCase(IntEnum):
    LOGIN_UNLOCK = 1
    PASSWORD_RESET = 2
    ACCOUNT_ACTIVATION = 3


class OtpOutcome(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"


class LoginStatus(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"


class UnlockStatus(str, Enum):
    UNLOCKED = "unlocked"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


class RegistrationStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    INVALID_PASSWORD = "invalid_password"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class Account:
    """A registered user.

    password_hash and salt are both bcrypt strings: salt is the output of
    bcrypt.gensalt(), password_hash is bcrypt.hashpw(password, salt).

    locked_until is None when unlocked, or when an administrator locked the
    account without an expiry (locked indefinitely).

    version is the optimistic-concurrency token. The store bumps it on every
    login-state write and rejects writes carrying a stale value.
    """

    username: str
    email: str
    password_hash: str
    salt: str
    id: int | None = None
    user_id: str = ""
    name: str = ""
    is_active: bool = True
    is_locked: bool = False
    is_deleted: bool = False
    login_attempts: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    role_id: RoleId = RoleId.USER
    created_on: datetime | None = None
    updated_on: datetime | None = None
    version: int = 0


@dataclass
class OtpRecord:
    """An issued one-time password.

    otp_hash is bcrypt(otp, salt); the plaintext code is never persisted.
    consumed_at is set by a successful verification, after which the record
    is no longer active.
    """

    email: str
    otp_hash: str
    salt: str
    generated_on: datetime
    valid_until: datetime
    use_case: OtpUseCase = OtpUseCase.LOGIN_UNLOCK
    user_id: int = 0
    attempt_count: int = 0
    consumed_at: datetime | None = None
    id: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.valid_until


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass
class LoginResult:
    """Result of AuthOrchestrator.login().

    txn is excluded from equality: an unknown email and a wrong password must
    produce equal results, and the correlation id is unique per call.
    """

    status: LoginStatus
    account: Account | None = None
    locked_until: datetime | None = None
    txn: str = field(default="", compare=False)

    @property
    def ok(self) -> bool:
        return self.status is LoginStatus.SUCCESS

    def to_error(self) -> AuthError | None:
        """Return the caller-safe taxonomy error for a failed login, None on success."""
        if self.status is LoginStatus.INVALID_CREDENTIALS:
            return CredentialError("Invalid email or password.", txn=self.txn)
        if self.status is LoginStatus.ACCOUNT_LOCKED:
            return LockoutError(
                "Account is locked. Try again later or unlock it with a one-time password.",
                locked_until=self.locked_until,
                txn=self.txn,
            )
        if self.status is LoginStatus.ACCOUNT_INACTIVE:
            return CredentialError(
                "Account is inactive.",
                error_code=ErrorCode.LOGIN_ACCOUNT_INACTIVE,
                txn=self.txn,
            )
        return None


@dataclass
class UnlockResult:
    status: UnlockStatus
    txn: str = field(default="", compare=False)

    @property
    def ok(self) -> bool:
        return self.status is UnlockStatus.UNLOCKED

    def to_error(self) -> AuthError | None:
        if self.status is UnlockStatus.MISMATCH:
            return CredentialError("Invalid one-time password.", error_code=ErrorCode.OTP_MISMATCH, txn=self.txn)
        if self.status is UnlockStatus.EXPIRED:
            return CredentialError("One-time password has expired.", error_code=ErrorCode.OTP_EXPIRED, txn=self.txn)
        if self.status is UnlockStatus.NOT_FOUND:
            return NotFoundError("No active one-time password.", error_code=ErrorCode.OTP_NOT_FOUND, txn=self.txn)
        return None


@dataclass
class RegistrationResult:
    status: RegistrationStatus
    user_id: int = 0
    txn: str = field(default="", compare=False)

    @property
    def ok(self) -> bool:
        return self.status is RegistrationStatus.CREATED

    def to_error(self) -> AuthError | None:
        if self.status is RegistrationStatus.DUPLICATE:
            return ValidationError(
                "A user with that username or email is already registered.",
                error_code=ErrorCode.ADD_USER_DUPLICATE,
                txn=self.txn,
            )
        if self.status is RegistrationStatus.INVALID_PASSWORD:
            return ValidationError("Password could not be read.", error_code=ErrorCode.ADD_USER_FAILED, txn=self.txn)
        return None


@dataclass
class BaseResult:
    """Status envelope for operations that report errors instead of raising.

    status is 1 on success and -1 on failure.
    """

    txn: str
    status: int = 1
    success_message: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status > 0

    @classmethod
    def failure(cls, error: AuthError) -> BaseResult:
        return cls(txn=error.txn, status=-1, error_code=error.error_code, error_message=error.message)
