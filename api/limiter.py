"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

One shared instance means all routes share one in-memory counter store.
The limit strings are read from Settings once, at import, so they follow
LOGIN_RATE_LIMIT, OTP_RATE_LIMIT and OTP_VERIFY_RATE_LIMIT.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

_settings = get_settings()

# Per-IP limits for POST /auth/login, /auth/otp and /auth/otp/verify.
LOGIN_RATE_LIMIT = _settings.login_rate_limit
OTP_RATE_LIMIT = _settings.otp_rate_limit
OTP_VERIFY_RATE_LIMIT = _settings.otp_verify_rate_limit
