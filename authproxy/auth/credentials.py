"""Credential primitives: API key and OTP code generation, salted hashing.

Implements:
  - generate_api_key()   — ``<prefix>.<secret>`` plus salt and hash
  - verify_full_key()    — fixed-time check of a presented key against a stored hash
  - generate_otp_code()  — uniformly random 6-digit code (leading zeros kept)
  - hash_secret()        — bcrypt-pbkdf over bytes with a per-record salt
  - encode_b64 / decode_b64 — storage encoding for salts and hashes

Non-negotiables:
  - All randomness comes from ``secrets`` (OS CSPRNG).
  - Plaintext keys and codes are returned to the caller exactly once and never
    persisted; only the salt and hash are stored.
  - Hash comparison uses ``hmac.compare_digest``.
  - The hashing primitive takes ``bytes`` only.  Text is encoded once, at the
    boundary, by ``encode_secret``.

Hash strength: bcrypt-pbkdf is expensive in CPU but only weakly memory-hard.
Each bcrypt round works in a fixed 4 KiB Blowfish state, far below what
scrypt or Argon2 demand, so GPU and ASIC attacks are slowed less.  The gap is
accepted: API key secrets carry 192 random bits and OTP codes expire within
minutes behind issuance caps, so the hash guards against a stolen database
rather than against guessing low-entropy passwords.  HASH_ROUNDS keeps one
hash in the tens of milliseconds.
"""

from __future__ import annotations

import base64
import hmac
import secrets
from dataclasses import dataclass

import bcrypt

from authproxy.constants import (
    HASH_LENGTH,
    HASH_ROUNDS,
    KEY_PREFIX_BYTES,
    KEY_SECRET_BYTES,
    KEY_SEPARATOR,
    OTP_DIGITS,
    SALT_BYTES,
)


@dataclass(frozen=True)
class GeneratedKey:
    """A freshly generated API key.  ``key`` is shown to the user once."""

    key: str
    prefix: str
    salt: bytes
    hash: bytes


# ─── Encoding helpers ─────────────────────────────────────────────────────────


def encode_secret(value: str) -> bytes:
    return value.encode("utf-8")


def encode_b64(raw: bytes) -> str:
    """Unpadded base64url text, the form salts and hashes are stored in."""
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_b64(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


# ─── Hashing ──────────────────────────────────────────────────────────────────


def new_salt() -> bytes:
    return secrets.token_bytes(SALT_BYTES)


def hash_secret(secret: bytes, salt: bytes) -> bytes:
    """Derive the stored hash of ``secret`` with bcrypt-pbkdf.

    Parameters are fixed (HASH_ROUNDS, HASH_LENGTH); changing them requires
    re-issuing every key and code.
    """
    return bcrypt.kdf(
        password=secret,
        salt=salt,
        desired_key_bytes=HASH_LENGTH,
        rounds=HASH_ROUNDS,
        ignore_few_rounds=True,
    )


def verify_secret(secret: bytes, salt: bytes, expected_hash: bytes) -> bool:
    return hmac.compare_digest(hash_secret(secret, salt), expected_hash)


# ─── API keys ─────────────────────────────────────────────────────────────────


def generate_api_key() -> GeneratedKey:
    """Generate a new ``<8 hex>.<32 url-safe>`` key with its salt and hash.

    The hash covers the full key string (prefix included).  Prefix uniqueness
    is not checked here; the per-user UNIQUE constraint catches collisions at
    insert time.
    """
    prefix = secrets.token_hex(KEY_PREFIX_BYTES)
    secret = secrets.token_urlsafe(KEY_SECRET_BYTES)
    key = f"{prefix}{KEY_SEPARATOR}{secret}"
    salt = new_salt()
    return GeneratedKey(key=key, prefix=prefix, salt=salt, hash=hash_secret(encode_secret(key), salt))


def split_key(raw_key: str) -> tuple[str, str]:
    """Split ``prefix.secret`` at the first separator."""
    prefix, _, secret = raw_key.partition(KEY_SEPARATOR)
    return prefix, secret


def verify_full_key(raw_key: str, salt: bytes, stored_hash: bytes) -> bool:
    return verify_secret(encode_secret(raw_key), salt, stored_hash)


# ─── OTP codes ────────────────────────────────────────────────────────────────


def generate_otp_code() -> str:
    """Uniform random code in ``000000``–``999999``."""
    return str(secrets.randbelow(10 ** OTP_DIGITS)).zfill(OTP_DIGITS)
