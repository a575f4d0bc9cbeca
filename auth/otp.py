"""
auth/otp.py -- One-time password minting, issuance and verification.

Codes are fixed-length numeric strings. Each digit is drawn independently
and uniformly from 0-9 with the secrets module (a CSPRNG). Only a salted
bcrypt hash of the code is stored; the plaintext goes to the notifier once.

Verification outcomes:
  NOT_FOUND  no unconsumed record for (email, use case). This includes a code
             that was already used: a consumed record is never VALID twice.
  EXPIRED    now > valid_until, or attempt_count has reached
             Settings.otp_max_attempts. The record is left in place for audit.
  MISMATCH   wrong code; attempt_count is incremented atomically.
  VALID      right code; the record is marked consumed.

The attempt increment and the consumption are conditional on the code hash
that was read, so a code replaced by re-issuance between the read and the
write never counts against, or consumes, the new code.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.models import OtpOutcome, OtpRecord, OtpUseCase
from auth.passwords import generate_salt, hash_secret, verify_secret
from auth.store import CredentialStore
from core.config import Settings
from core.errors import ValidationError

logger = logging.getLogger("ayerhs.otp")

_DIGITS = "0123456789"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtpEngine:
    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clock = clock
        self._length = settings.otp_length
        self._ttl = timedelta(seconds=settings.otp_ttl_seconds)
        self._rounds = settings.bcrypt_rounds
        self._max_attempts = settings.otp_max_attempts

    @staticmethod
    def generate(length: int = 6) -> str:
        """Return `length` random decimal digits."""
        if length < 1:
            raise ValidationError("OTP length must be at least 1.")
        return "".join(secrets.choice(_DIGITS) for _ in range(length))

    def issue(self, email: str, use_case: OtpUseCase, *, user_id: int = 0, txn: str) -> tuple[str, OtpRecord]:
        """Mint a code and store it as the active record for (email, use_case).

        Overwrites any previous record for the pair, which resets
        attempt_count and clears consumption. Returns (plain_otp, record).
        """
        otp = self.generate(self._length)
        salt = generate_salt(self._rounds)
        now = self._clock()
        record = OtpRecord(
            user_id=user_id,
            email=email,
            otp_hash=hash_secret(otp, salt),
            salt=salt,
            generated_on=now,
            valid_until=now + self._ttl,
            attempt_count=0,
            use_case=use_case,
        )
        self._store.upsert_otp(record, txn=txn)
        logger.info("[%s] OTP issued for use case %s, valid until %s", txn, use_case.name, record.valid_until.isoformat())
        return otp, record

    def verify(
        self,
        email: str,
        submitted_otp: str,
        use_case: OtpUseCase = OtpUseCase.LOGIN_UNLOCK,
        *,
        unlock: bool = False,
        txn: str,
    ) -> OtpOutcome:
        """Check a submitted code against the active record for (email, use_case).

        With unlock=True a VALID code is consumed together with clearing the
        account's lock, in one store transaction.
        """
        record = self._store.get_active_otp(email, use_case, txn=txn)
        if record is None:
            return OtpOutcome.NOT_FOUND

        now = self._clock()
        if record.is_expired(now):
            logger.info("[%s] OTP expired (record %s)", txn, record.id)
            return OtpOutcome.EXPIRED
        if record.attempt_count >= self._max_attempts:
            logger.warning("[%s] OTP attempts exhausted (record %s)", txn, record.id)
            return OtpOutcome.EXPIRED

        if not verify_secret(submitted_otp, record.salt, record.otp_hash):
            attempts = self._store.increment_otp_attempts(record.id, record.otp_hash, txn=txn)
            logger.warning("[%s] OTP mismatch (record %s, attempts=%d)", txn, record.id, attempts)
            return OtpOutcome.MISMATCH

        if unlock:
            consumed = self._store.consume_otp_and_unlock(record, now, txn=txn)
        else:
            consumed = self._store.consume_otp(record.id, now, otp_hash=record.otp_hash, txn=txn)
        if not consumed:
            # Consumed or re-issued by a concurrent request after the read.
            return OtpOutcome.NOT_FOUND
        logger.info("[%s] OTP verified (record %s)", txn, record.id)
        return OtpOutcome.VALID
