"""Unit tests for auth/otp.py and auth/passwords.py.

Covers:
- generate() length and digit alphabet
- issue() stores only a hash and overwrites the previous code
- verify() outcomes: VALID, MISMATCH, EXPIRED, NOT_FOUND
- a verified code is consumed and cannot be used twice
- a code replaced by re-issuance after the read neither consumes nor counts
  against the new code
- verification stops matching once otp_max_attempts is reached
- salted hashing helpers reject malformed input
"""

from unittest.mock import patch

import pytest

from auth.models import OtpOutcome, OtpUseCase
from auth.otp import OtpEngine
from auth.passwords import generate_salt, hash_secret, verify_secret
from core.errors import ValidationError, new_txn

EMAIL = "otp@example.com"


@pytest.fixture
def engine(settings, store, clock) -> OtpEngine:
    return OtpEngine(settings, store, clock=clock)


class TestGenerate:
    @pytest.mark.parametrize("length", [1, 6, 10])
    def test_length_and_digits(self, length) -> None:
        otp = OtpEngine.generate(length)
        assert len(otp) == length
        assert otp.isdigit()

    def test_zero_length_rejected(self) -> None:
        with pytest.raises(ValidationError):
            OtpEngine.generate(0)

    def test_codes_vary(self) -> None:
        assert len({OtpEngine.generate(6) for _ in range(50)}) > 1


class TestIssue:
    def test_stores_hash_not_plaintext(self, engine, store) -> None:
        otp, record = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        stored = store.get_active_otp(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        assert stored is not None
        assert stored.id == record.id
        assert otp not in stored.otp_hash
        assert verify_secret(otp, stored.salt, stored.otp_hash)

    def test_validity_window_uses_ttl(self, engine, clock, settings) -> None:
        _otp, record = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        assert record.generated_on == clock.now
        assert (record.valid_until - record.generated_on).total_seconds() == settings.otp_ttl_seconds

    def test_reissue_replaces_previous_code(self, engine) -> None:
        first, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        second, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        if first != second:
            assert engine.verify(EMAIL, first, txn=new_txn()) is OtpOutcome.MISMATCH
        assert engine.verify(EMAIL, second, txn=new_txn()) is OtpOutcome.VALID

    def test_reissue_resets_attempt_count(self, engine, store) -> None:
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        wrong = "0" * len(otp) if otp != "0" * len(otp) else "1" * len(otp)
        engine.verify(EMAIL, wrong, txn=new_txn())
        engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        assert store.get_active_otp(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn()).attempt_count == 0

    def test_use_cases_are_independent(self, engine) -> None:
        unlock, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        engine.issue(EMAIL, OtpUseCase.PASSWORD_RESET, txn=new_txn())
        assert engine.verify(EMAIL, unlock, OtpUseCase.LOGIN_UNLOCK, txn=new_txn()) is OtpOutcome.VALID


class TestVerify:
    def test_valid(self, engine) -> None:
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        assert engine.verify(EMAIL, otp, txn=new_txn()) is OtpOutcome.VALID

    def test_mismatch_increments_attempts(self, engine, store) -> None:
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        wrong = str((int(otp) + 1) % 10**6).zfill(6)
        assert engine.verify(EMAIL, wrong, txn=new_txn()) is OtpOutcome.MISMATCH
        assert engine.verify(EMAIL, wrong, txn=new_txn()) is OtpOutcome.MISMATCH
        assert store.get_active_otp(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn()).attempt_count == 2

    def test_expired_after_ttl(self, engine, clock) -> None:
        """Issued at T with a 5 minute TTL, verified at T+6 minutes."""
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        clock.advance(minutes=6)
        assert engine.verify(EMAIL, otp, txn=new_txn()) is OtpOutcome.EXPIRED

    def test_valid_at_exact_expiry(self, engine, clock, settings) -> None:
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        clock.advance(seconds=settings.otp_ttl_seconds)
        assert engine.verify(EMAIL, otp, txn=new_txn()) is OtpOutcome.VALID

    def test_expired_record_is_kept(self, engine, clock, store) -> None:
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        clock.advance(minutes=6)
        engine.verify(EMAIL, otp, txn=new_txn())
        assert store.get_active_otp(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn()) is not None

    def test_not_found_without_issue(self, engine) -> None:
        assert engine.verify(EMAIL, "123456", txn=new_txn()) is OtpOutcome.NOT_FOUND

    def test_consumed_code_is_not_found(self, engine) -> None:
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        assert engine.verify(EMAIL, otp, txn=new_txn()) is OtpOutcome.VALID
        assert engine.verify(EMAIL, otp, txn=new_txn()) is OtpOutcome.NOT_FOUND

    def test_code_replaced_after_read_does_not_consume_new_code(self, engine, store) -> None:
        """A re-issue landing between the read and the consume wins."""
        old, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        real_get = store.get_active_otp
        fresh = {}

        def read_then_reissue(*args, **kwargs):
            record = real_get(*args, **kwargs)
            fresh["otp"], _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
            return record

        with patch.object(store, "get_active_otp", side_effect=read_then_reissue):
            assert engine.verify(EMAIL, old, txn=new_txn()) is OtpOutcome.NOT_FOUND
        assert engine.verify(EMAIL, fresh["otp"], txn=new_txn()) is OtpOutcome.VALID

    def test_mismatch_on_replaced_code_is_not_counted(self, engine, store) -> None:
        old, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        real_get = store.get_active_otp

        def read_then_reissue(*args, **kwargs):
            record = real_get(*args, **kwargs)
            engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
            return record

        wrong = str((int(old) + 1) % 10**6).zfill(6)
        with patch.object(store, "get_active_otp", side_effect=read_then_reissue):
            assert engine.verify(EMAIL, wrong, txn=new_txn()) is OtpOutcome.MISMATCH
        assert store.get_active_otp(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn()).attempt_count == 0

    def test_attempts_exhausted_reports_expired(self, engine, settings) -> None:
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        wrong = str((int(otp) + 1) % 10**6).zfill(6)
        for _ in range(settings.otp_max_attempts):
            assert engine.verify(EMAIL, wrong, txn=new_txn()) is OtpOutcome.MISMATCH
        assert engine.verify(EMAIL, otp, txn=new_txn()) is OtpOutcome.EXPIRED

    def test_reissue_restores_attempts(self, engine, settings) -> None:
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        wrong = str((int(otp) + 1) % 10**6).zfill(6)
        for _ in range(settings.otp_max_attempts):
            engine.verify(EMAIL, wrong, txn=new_txn())
        otp, _ = engine.issue(EMAIL, OtpUseCase.LOGIN_UNLOCK, txn=new_txn())
        assert engine.verify(EMAIL, otp, txn=new_txn()) is OtpOutcome.VALID


class TestSaltedHashing:
    def test_verify_round_trip(self) -> None:
        salt = generate_salt(4)
        hashed = hash_secret("secret", salt)
        assert verify_secret("secret", salt, hashed)
        assert not verify_secret("Secret", salt, hashed)

    def test_fresh_salt_each_call(self) -> None:
        assert generate_salt(4) != generate_salt(4)

    @pytest.mark.parametrize("salt,hashed", [("", "x"), ("not-a-salt", "not-a-hash")])
    def test_malformed_inputs_return_false(self, salt, hashed) -> None:
        assert not verify_secret("secret", salt, hashed)
