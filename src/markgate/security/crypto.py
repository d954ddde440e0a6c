"""Crypto helpers: token encryption at rest, PKCE, secret hashing.

Everything here is a pure function. Keys are passed in by the caller.

* Tokens at rest use Fernet (AES-128-CBC + HMAC-SHA256). The Fernet key is
  derived from one configured secret with PBKDF2-HMAC-SHA256.
* Client secrets are hashed with bcrypt; only the hash is ever stored.
* PKCE uses the S256 method of RFC 7636.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from functools import lru_cache

import bcrypt
from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "TokenDecryptionError",
    "constant_time_equals",
    "decrypt_token",
    "derive_fernet_key",
    "encrypt_token",
    "generate_pkce_pair",
    "generate_token",
    "hash_secret",
    "sha256_b64url",
    "verify_pkce",
    "verify_secret",
]

logger = logging.getLogger(__name__)

# Fixed salt for key derivation (not a secret).
_KDF_SALT = b"markgate_token_encryption_v1"
_KDF_ITERATIONS = 100_000
_BCRYPT_ROUNDS = 10


class TokenDecryptionError(ValueError):
    """Ciphertext was tampered with or encrypted under a different key."""


@lru_cache(maxsize=8)
def derive_fernet_key(secret: str) -> bytes:
    """Derive a urlsafe-base64 Fernet key from an arbitrary secret string."""
    if not secret:
        raise ValueError("Encryption secret must not be empty")
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        secret.encode("utf-8"),
        _KDF_SALT,
        _KDF_ITERATIONS,
        dklen=32,
    )
    return base64.urlsafe_b64encode(raw)


def encrypt_token(token: str, secret: str) -> str:
    """Encrypt *token* for storage."""
    if not token:
        raise ValueError("Cannot encrypt empty token")
    return Fernet(derive_fernet_key(secret)).encrypt(token.encode("utf-8")).decode("utf-8")


def decrypt_token(ciphertext: str, secret: str) -> str:
    """Decrypt a value produced by :func:`encrypt_token`."""
    if not ciphertext:
        raise ValueError("Cannot decrypt empty token")
    try:
        plain = Fernet(derive_fernet_key(secret)).decrypt(ciphertext.encode("utf-8"))
    except InvalidToken as exc:
        logger.warning("Token decryption failed: invalid ciphertext or wrong key")
        raise TokenDecryptionError("Failed to decrypt token") from exc
    return plain.decode("utf-8")


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking where they differ."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def sha256_b64url(value: str) -> str:
    """BASE64URL(SHA256(value)) without padding."""
    digest = hashlib.sha256(value.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE (code_verifier, code_challenge) pair.

    The verifier is 64 random bytes, base64url encoded (86 characters).
    """
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(64)).rstrip(b"=").decode("ascii")
    return verifier, sha256_b64url(verifier)


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    """S256 check: ``BASE64URL(SHA256(code_verifier)) == code_challenge``."""
    try:
        computed = sha256_b64url(code_verifier)
    except UnicodeEncodeError:
        return False
    return constant_time_equals(computed, code_challenge)


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def hash_secret(secret: str) -> str:
    """bcrypt hash of a client secret."""
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode(
        "utf-8"
    )


def verify_secret(secret: str, hashed: str) -> bool:
    """Check *secret* against a bcrypt hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False
