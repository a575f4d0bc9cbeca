"""
auth/orchestrator.py -- Login, lockout and OTP-unlock state machine.

Per-account states: Unlocked (initial) and Locked.
  Unlocked -> Locked    the threshold-th consecutive failed login.
  Locked   -> Unlocked  successful OTP verification, administrative unlock,
                        or a login arriving after locked_until has passed.

The orchestrator holds no per-request state; everything mutable lives in the
CredentialStore. Account writes are optimistic: read, compute, conditional
write on the row version, and on conflict re-read and recompute. After
Settings.store_max_retries conflicts the call fails with STORE_CONTENTION.

Failure semantics:
  - Expected outcomes (wrong password, locked, expired OTP) are returned as
    result values, never raised.
  - CryptoError from password decryption becomes INVALID_CREDENTIALS.
  - An unknown or soft-deleted email produces the same INVALID_CREDENTIALS
    value as a wrong password, after a dummy bcrypt check so response time
    does not reveal whether the account exists [C1]. request_otp() answers
    an unknown email with the same success result it gives a registered one.
  - TransientStoreError from the store is logged once here, with full
    detail, then re-raised with the driver detail stripped. request_otp()
    reports it as a failed BaseResult instead.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from auth.crypto import CryptoCore
from auth.models import (
    Account,
    BaseResult,
    LoginResult,
    LoginStatus,
    OtpOutcome,
    OtpUseCase,
    RegistrationResult,
    RegistrationStatus,
    RoleId,
    UnlockResult,
    UnlockStatus,
)
from auth.notifier import Notifier
from auth.otp import OtpEngine
from auth.passwords import MAX_SECRET_BYTES, generate_salt, hash_secret, verify_secret
from auth.store import CredentialStore
from core.config import Settings
from core.errors import (
    AuthError,
    CryptoError,
    ErrorCode,
    TransientStoreError,
    ValidationError,
    new_txn,
)

logger = logging.getLogger("ayerhs.auth")

_STORE_FAILURE_MESSAGE = "The credential store is temporarily unavailable. Please try again."

_UNLOCK_BY_OUTCOME = {
    OtpOutcome.MISMATCH: UnlockStatus.MISMATCH,
    OtpOutcome.EXPIRED: UnlockStatus.EXPIRED,
    OtpOutcome.NOT_FOUND: UnlockStatus.NOT_FOUND,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_email(email: str | None, txn: str) -> str:
    cleaned = (email or "").strip().lower()
    if "@" not in cleaned or len(cleaned) > 255:
        raise ValidationError("A valid email address is required.", txn=txn)
    return cleaned


def _clear_lock(account: Account) -> None:
    account.is_locked = False
    account.locked_until = None
    account.login_attempts = 0


class AuthOrchestrator:
    """Coordinates CryptoCore, CredentialStore, OtpEngine and the Notifier.

    Usage:
        orchestrator = AuthOrchestrator(settings, store, crypto, otp_engine, notifier)
        result = orchestrator.login(email, encrypted_password, private_key_pem)
        if result.ok:
            ...
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        crypto: CryptoCore,
        otp_engine: OtpEngine,
        notifier: Notifier,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._crypto = crypto
        self._otp = otp_engine
        self._notifier = notifier
        self._clock = clock
        self._threshold = settings.max_login_attempts
        self._lockout = timedelta(seconds=settings.lockout_seconds)
        self._max_retries = settings.store_max_retries
        self._rounds = settings.bcrypt_rounds
        self._otp_subject = settings.otp_email_subject
        # Same cost factor as real hashes so timing stays equal [C1].
        self._dummy_salt = generate_salt(self._rounds)
        self._dummy_hash = hash_secret("ayerhs_timing_dummy", self._dummy_salt)

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    @contextmanager
    def _store_boundary(self, txn: str, operation: str) -> Iterator[None]:
        try:
            yield
        except TransientStoreError as exc:
            if exc.error_code == ErrorCode.STORE_CONTENTION:
                logger.warning("[%s] %s gave up after %d conflicting writes", txn, operation, self._max_retries)
                raise
            logger.error("[%s] %s failed (%s): %s", txn, operation, exc.error_code, exc.message, exc_info=exc)
            raise TransientStoreError(_STORE_FAILURE_MESSAGE, exc.error_code, txn) from None

    def _contention(self, txn: str) -> TransientStoreError:
        return TransientStoreError(
            "Account is being modified concurrently. Please try again.",
            ErrorCode.STORE_CONTENTION,
            txn,
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, encrypted_password: str, private_key: str) -> LoginResult:
        """Authenticate an email and RSA-encrypted password.

        Returns SUCCESS (with the account), INVALID_CREDENTIALS,
        ACCOUNT_LOCKED (with locked_until) or ACCOUNT_INACTIVE.
        """
        txn = new_txn()
        email = _normalize_email(email, txn)
        if not encrypted_password:
            raise ValidationError("Password is required.", txn=txn)

        try:
            password = self._crypto.decrypt_password(encrypted_password, private_key)
        except CryptoError:
            logger.warning("[%s] Login rejected: password could not be decrypted", txn)
            return LoginResult(LoginStatus.INVALID_CREDENTIALS, txn=txn)

        with self._store_boundary(txn, "login"):
            for _ in range(self._max_retries):
                result = self._attempt_login(email, password, txn)
                if result is not None:
                    return result
                logger.debug("[%s] Login state write conflicted; retrying", txn)
            raise self._contention(txn)

    def _attempt_login(self, email: str, password: str, txn: str) -> LoginResult | None:
        """One read-compute-write pass. Returns None when the write lost a race."""
        account = self._store.find_by_email(email, txn=txn)
        if account is None or account.is_deleted:
            verify_secret(password, self._dummy_salt, self._dummy_hash)
            logger.info("[%s] Login failed: invalid credentials", txn)
            return LoginResult(LoginStatus.INVALID_CREDENTIALS, txn=txn)

        now = self._clock()
        dirty = False
        if account.is_locked:
            if account.locked_until is None or account.locked_until > now:
                logger.info("[%s] Login refused: account %s locked until %s", txn, account.id, account.locked_until)
                return LoginResult(LoginStatus.ACCOUNT_LOCKED, locked_until=account.locked_until, txn=txn)
            _clear_lock(account)
            dirty = True
            logger.info("[%s] Lock on account %s expired; unlocking", txn, account.id)

        if not account.is_active:
            if dirty and not self._store.update_login_state(account, txn=txn):
                return None
            logger.info("[%s] Login refused: account %s inactive", txn, account.id)
            return LoginResult(LoginStatus.ACCOUNT_INACTIVE, txn=txn)

        if not verify_secret(password, account.salt, account.password_hash):
            account.login_attempts += 1
            if account.login_attempts >= self._threshold:
                account.is_locked = True
                account.locked_until = now + self._lockout
            if not self._store.update_login_state(account, txn=txn):
                return None
            if account.is_locked:
                logger.warning(
                    "[%s] Account %s locked after %d failed attempts (until %s)",
                    txn,
                    account.id,
                    account.login_attempts,
                    account.locked_until.isoformat(),
                )
            else:
                logger.info("[%s] Login failed for account %s (attempts=%d)", txn, account.id, account.login_attempts)
            return LoginResult(LoginStatus.INVALID_CREDENTIALS, txn=txn)

        account.login_attempts = 0
        account.last_login = now
        if not self._store.update_login_state(account, txn=txn):
            return None
        logger.info("[%s] Login succeeded for account %s", txn, account.id)
        return LoginResult(LoginStatus.SUCCESS, account=account, txn=txn)

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    def request_otp(self, email: str, use_case: OtpUseCase = OtpUseCase.LOGIN_UNLOCK) -> BaseResult:
        """Issue an OTP for a registered account and e-mail it.

        An unknown or soft-deleted email gets the same success result as a
        registered one, after a dummy hash so timing matches issuance, and no
        mail is sent. Store and delivery failures are reported in the
        returned BaseResult and never retried.
        """
        txn = new_txn()
        email = _normalize_email(email, txn)
        sent_message = f"OTP sent successfully on email '{email}'."
        try:
            account = self._store.find_by_email(email, txn=txn)
            if account is None or account.is_deleted:
                hash_secret("ayerhs_timing_dummy", self._dummy_salt)
                logger.warning("[%s] OTP requested for an unregistered email; nothing sent", txn)
                return BaseResult(txn=txn, success_message=sent_message)
            otp, _record = self._otp.issue(email, use_case, user_id=account.id or 0, txn=txn)
        except TransientStoreError as exc:
            logger.error("[%s] OTP generation failed (%s): %s", txn, exc.error_code, exc.message, exc_info=exc)
            return BaseResult.failure(
                TransientStoreError(
                    "An error occurred while generating the OTP. Please try again.",
                    ErrorCode.OTP_GENERATION_FAILED,
                    txn,
                )
            )

        sent, error = self._notifier.send_otp(email, otp, self._otp_subject)
        if not sent:
            logger.error("[%s] OTP delivery failed: %s", txn, error)
            return BaseResult.failure(
                AuthError("The OTP could not be delivered. Please try again.", ErrorCode.OTP_DELIVERY_FAILED, txn)
            )
        return BaseResult(txn=txn, success_message=sent_message)

    def verify_otp_and_unlock(self, email: str, otp: str) -> UnlockResult:
        """Verify a LOGIN_UNLOCK code and, if valid, clear the account's lock.

        The code is consumed and the lock cleared in one store transaction,
        so a store failure leaves the code usable for a retry. A failed
        verification never resets login_attempts.
        """
        txn = new_txn()
        email = _normalize_email(email, txn)
        if not otp or not otp.strip():
            raise ValidationError("OTP is required.", txn=txn)

        with self._store_boundary(txn, "verify_otp_and_unlock"):
            account = self._store.find_by_email(email, txn=txn)
            if account is None or account.is_deleted:
                return UnlockResult(UnlockStatus.NOT_FOUND, txn=txn)
            outcome = self._otp.verify(email, otp.strip(), OtpUseCase.LOGIN_UNLOCK, unlock=True, txn=txn)
        if outcome is not OtpOutcome.VALID:
            return UnlockResult(_UNLOCK_BY_OUTCOME[outcome], txn=txn)
        logger.info("[%s] Account %s unlocked by OTP", txn, account.id)
        return UnlockResult(UnlockStatus.UNLOCKED, txn=txn)

    def unlock_account(self, email: str) -> UnlockResult:
        """Administrative unlock: same transition as a successful OTP unlock."""
        txn = new_txn()
        email = _normalize_email(email, txn)
        with self._store_boundary(txn, "unlock_account"):
            result = self._unlock(email, txn)
        logger.info("[%s] Administrative unlock: %s", txn, result.status.value)
        return result

    def _unlock(self, email: str, txn: str) -> UnlockResult:
        for _ in range(self._max_retries):
            account = self._store.find_by_email(email, txn=txn)
            if account is None or account.is_deleted:
                return UnlockResult(UnlockStatus.NOT_FOUND, txn=txn)
            if not account.is_locked and account.login_attempts == 0 and account.locked_until is None:
                return UnlockResult(UnlockStatus.UNLOCKED, txn=txn)
            _clear_lock(account)
            if self._store.update_login_state(account, txn=txn):
                logger.info("[%s] Account %s unlocked", txn, account.id)
                return UnlockResult(UnlockStatus.UNLOCKED, txn=txn)
        raise self._contention(txn)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        username: str,
        email: str,
        encrypted_password: str,
        private_key: str,
    ) -> RegistrationResult:
        """Create an active, unlocked account with a salted password hash."""
        txn = new_txn()
        email = _normalize_email(email, txn)
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required.", txn=txn)

        try:
            password = self._crypto.decrypt_password(encrypted_password, private_key)
        except CryptoError:
            logger.warning("[%s] Registration rejected: password could not be decrypted", txn)
            return RegistrationResult(RegistrationStatus.INVALID_PASSWORD, txn=txn)
        if len(password.encode("utf-8")) > MAX_SECRET_BYTES:
            logger.info("[%s] Registration rejected: password longer than %d bytes", txn, MAX_SECRET_BYTES)
            return RegistrationResult(RegistrationStatus.INVALID_PASSWORD, txn=txn)

        with self._store_boundary(txn, "register"):
            if self._store.find_id_by_username_or_email(username, email, txn=txn) > 0:
                logger.info("[%s] Registration refused: username or email already registered", txn)
                return RegistrationResult(RegistrationStatus.DUPLICATE, txn=txn)

            salt = generate_salt(self._rounds)
            account = Account(
                user_id=str(uuid.uuid4()),
                name=(name or "").strip(),
                username=username,
                email=email,
                password_hash=hash_secret(password, salt),
                salt=salt,
                role_id=RoleId.USER,
                created_on=self._clock(),
            )
            try:
                new_id = self._store.insert(account, txn=txn)
            except TransientStoreError as exc:
                if exc.error_code != ErrorCode.STORE_DUPLICATE:
                    raise
                # Lost a race with a concurrent registration.
                return RegistrationResult(RegistrationStatus.DUPLICATE, txn=txn)

        logger.info("[%s] Account %s registered", txn, new_id)
        return RegistrationResult(RegistrationStatus.CREATED, user_id=new_id, txn=txn)
