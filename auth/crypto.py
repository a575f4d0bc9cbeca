"""
auth/crypto.py -- RSA password decryption and AES values-at-rest encryption.

Security design decisions:
  RSA: clients encrypt the login password with the service's public key
       using PKCS#1 v1.5 padding. decrypt_password() raises one CryptoError
       with one message for every failure mode (malformed key, wrong key,
       tampered ciphertext, padding mismatch) so callers cannot build a
       padding oracle out of differing errors.

       With OpenSSL implicit rejection a wrong key decrypts to random bytes
       instead of failing. Plaintext is therefore also rejected when it is
       shorter than Settings.min_password_length or contains a control
       character (Unicode category Cc). Short random outputs still pass
       with a small probability; see DESIGN.md.

  AES: AES-256-CBC with PKCS#7 padding, keyed by Settings.aes_key with the
       fixed IV Settings.aes_iv unless an explicit key is supplied. A fixed
       IV leaks equality of plaintext prefixes under the same key. The format
       is kept for compatibility with existing ciphertexts; see DESIGN.md.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import binascii
import unicodedata

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from core.config import Settings
from core.errors import CryptoError

_DECRYPT_FAILED = "Unable to decrypt the supplied value."


class CryptoCore:
    """Cryptographic operations used by the authentication flow.

    Usage:
        crypto = CryptoCore(settings)
        plain = crypto.decrypt_password(ciphertext_b64, private_key_pem)
        token = crypto.aes_encrypt("secret")
        assert crypto.aes_decrypt(token) == "secret"
    """

    def __init__(self, settings: Settings) -> None:
        self._aes_key = settings.aes_key_bytes
        self._aes_iv = settings.aes_iv_bytes
        self._min_length = settings.min_password_length

    # ------------------------------------------------------------------
    # RSA
    # ------------------------------------------------------------------

    def decrypt_password(self, ciphertext_b64: str, private_key_pem: str) -> str:
        """Decrypt a base64 RSA/PKCS#1 v1.5 ciphertext with a PEM private key."""
        try:
            key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
            if not isinstance(key, rsa.RSAPrivateKey):
                raise CryptoError(_DECRYPT_FAILED)
            ciphertext = base64.b64decode(ciphertext_b64, validate=True)
            plaintext = key.decrypt(ciphertext, padding.PKCS1v15()).decode("utf-8")
            if not self._plausible(plaintext):
                raise CryptoError(_DECRYPT_FAILED)
            return plaintext
        except CryptoError:
            raise
        except (ValueError, TypeError, binascii.Error, UnicodeError, UnsupportedAlgorithm, AttributeError) as exc:
            raise CryptoError(_DECRYPT_FAILED) from exc

    def _plausible(self, plaintext: str) -> bool:
        if len(plaintext) < self._min_length:
            return False
        return not any(unicodedata.category(ch) == "Cc" for ch in plaintext)

    @staticmethod
    def encrypt_password(plaintext: str, public_key_pem: str) -> str:
        """Client-side counterpart of decrypt_password(). Returns base64 ciphertext."""
        try:
            key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise CryptoError("Invalid public key.") from exc
        if not isinstance(key, rsa.RSAPublicKey):
            raise CryptoError("Invalid public key.")
        ciphertext = key.encrypt(plaintext.encode("utf-8"), padding.PKCS1v15())
        return base64.b64encode(ciphertext).decode("ascii")

    @staticmethod
    def public_key_pem(private_key_pem: str) -> str:
        """Derive the SubjectPublicKeyInfo PEM for a PEM private key."""
        try:
            key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise CryptoError("Invalid private key.") from exc
        return (
            key.public_key()
            .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
            .decode("ascii")
        )

    @staticmethod
    def generate_private_key_pem(bits: int = 2048) -> str:
        """Generate a new unencrypted PKCS#8 RSA private key."""
        key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
        return key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")

    # ------------------------------------------------------------------
    # AES
    # ------------------------------------------------------------------

    def aes_encrypt(self, plaintext: str, key: bytes | None = None) -> str:
        """Encrypt a UTF-8 string; return base64 ciphertext."""
        cipher = self._cipher(key)
        padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = cipher.encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(ciphertext).decode("ascii")

    def aes_decrypt(self, ciphertext_b64: str, key: bytes | None = None) -> str:
        """Decrypt base64 ciphertext produced by aes_encrypt()."""
        cipher = self._cipher(key)
        try:
            ciphertext = base64.b64decode(ciphertext_b64, validate=True)
            decryptor = cipher.decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
            data = unpadder.update(padded) + unpadder.finalize()
            return data.decode("utf-8")
        except (ValueError, binascii.Error, UnicodeError) as exc:
            raise CryptoError(_DECRYPT_FAILED) from exc

    def _cipher(self, key: bytes | None) -> Cipher:
        try:
            return Cipher(algorithms.AES(key if key is not None else self._aes_key), modes.CBC(self._aes_iv))
        except (ValueError, TypeError) as exc:
            raise CryptoError("Invalid AES key.") from exc
