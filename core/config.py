"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Ayerhs happen here. No module should
call os.getenv() or os.environ.get() directly. Components receive a Settings
instance at construction; only application assembly (api/main.py, main.py)
calls get_settings().

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  Explicit injection: CryptoCore, OtpEngine, EmailNotifier and
      AuthOrchestrator all take the Settings object in __init__ so tests can
      build isolated instances with different thresholds or keys.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing AES material
      with a warning, production mode refuses to start without it.

Security notes:
  [S1] AES_KEY must decode (base64) to exactly 32 bytes, AES_IV to exactly 16.
  [S2] The IV is fixed for the lifetime of the key. This reproduces the
       existing at-rest format; see DESIGN.md (open question on random IVs).

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import base64
import binascii
import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ayerhs.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'ayerhs_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings(debug=True) can be instantiated in
    test environments without a real .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `max_login_attempts` reads from MAX_LOGIN_ATTEMPTS.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    app_name: str = "Ayerhs"
    debug: bool = False
    log_level: str = "INFO"
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    max_login_attempts: int = 5
    lockout_seconds: int = 15 * 60
    # Bounded optimistic-concurrency retries for account writes.
    store_max_retries: int = 3

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    otp_length: int = 6
    otp_ttl_seconds: int = 15 * 60
    otp_email_subject: str = "Ayerhs - Account Verification Code"
    # Failed verifications allowed per issued code before it stops matching.
    otp_max_attempts: int = 5

    # ------------------------------------------------------------------
    # Crypto
    # ------------------------------------------------------------------

    # Base64 strings. Empty string is the "not configured" sentinel; the
    # validator below fills or rejects it so callers never see "".
    aes_key: str = ""
    aes_iv: str = ""
    # PEM private key used to decrypt client-encrypted passwords. The path
    # wins when both are set.
    rsa_private_key_path: str = ""
    rsa_private_key_pem: str = ""
    bcrypt_rounds: int = 12
    # Shortest password accepted at registration. Decrypted text shorter than
    # this is treated as a decryption failure.
    min_password_length: int = 12

    # ------------------------------------------------------------------
    # Email (SMTP)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""
    smtp_use_tls: bool = True
    smtp_timeout_seconds: int = 10

    # ------------------------------------------------------------------
    # HTTP layer
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"
    otp_verify_rate_limit: str = "10/minute"
    # Status code for locked / inactive login outcomes (200 or 403).
    locked_status_code: int = 403

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_aes_material(self) -> "Settings":
        """Enforce AES key/IV policy [S1].

        Dev mode (DEBUG=true): auto-generate missing key/IV with a warning.
            Values encrypted at rest will not decrypt after a restart.

        Production mode: refuse to start if either value is missing.
        """
        if not self.aes_key or not self.aes_iv:
            if self.debug:
                if not self.aes_key:
                    self.aes_key = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
                if not self.aes_iv:
                    self.aes_iv = base64.b64encode(secrets.token_bytes(16)).decode("ascii")
                logger.warning("WARNING: Using auto-generated AES key material. Encrypted values will not survive restarts.")
            else:
                raise ValueError(
                    "AES_KEY and AES_IV are required in production mode. "
                    "Set them in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(_b64(self.aes_key, "AES_KEY")) != 32:
            raise ValueError("AES_KEY must decode to exactly 32 bytes (AES-256).")
        if len(_b64(self.aes_iv, "AES_IV")) != 16:
            raise ValueError("AES_IV must decode to exactly 16 bytes.")
        if self.max_login_attempts < 1:
            raise ValueError("MAX_LOGIN_ATTEMPTS must be at least 1.")
        if self.store_max_retries < 1:
            raise ValueError("STORE_MAX_RETRIES must be at least 1.")
        if self.otp_max_attempts < 1:
            raise ValueError("OTP_MAX_ATTEMPTS must be at least 1.")
        if self.min_password_length < 1:
            raise ValueError("MIN_PASSWORD_LENGTH must be at least 1.")
        return self

    @property
    def aes_key_bytes(self) -> bytes:
        return base64.b64decode(self.aes_key)

    @property
    def aes_iv_bytes(self) -> bytes:
        return base64.b64decode(self.aes_iv)

    def load_private_key_pem(self) -> str:
        """Return the configured RSA private key PEM, or "" if none is configured."""
        if self.rsa_private_key_path:
            return Path(self.rsa_private_key_path).read_text(encoding="utf-8")
        return self.rsa_private_key_pem


def _b64(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"{name} is not valid base64.") from exc


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: construct Settings(...) directly, or call
    get_settings.cache_clear() after changing environment variables.
    """
    return Settings()
