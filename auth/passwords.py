"""
auth/passwords.py -- Salted bcrypt hashing for passwords and OTP codes.

The salt is kept as its own column (bcrypt.gensalt() output) and the hash is
recomputed from (secret, salt) at verification time, then compared in
constant time. bcrypt.hashpw() with a gensalt() string is the documented way
to derive a hash from an explicit salt.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac

import bcrypt

# bcrypt rejects secrets longer than MAX_SECRET_BYTES; registration refuses
# such passwords before they reach hash_secret().
MAX_SECRET_BYTES = 72
_ENCODING = "utf-8"


def generate_salt(rounds: int = 12) -> str:
    """Return a fresh bcrypt salt string with the given cost factor."""
    return bcrypt.gensalt(rounds=rounds).decode(_ENCODING)


def hash_secret(plain: str, salt: str) -> str:
    """Return bcrypt(plain, salt) as a str."""
    return bcrypt.hashpw(plain.encode(_ENCODING), salt.encode(_ENCODING)).decode(_ENCODING)


def verify_secret(plain: str, salt: str, hashed: str) -> bool:
    """Return True if plain hashes to `hashed` under `salt`. False on malformed input."""
    if not plain or not salt or not hashed:
        return False
    try:
        candidate = hash_secret(plain, salt)
    except ValueError:
        return False
    return hmac.compare_digest(candidate.encode(_ENCODING), hashed.encode(_ENCODING))

