"""
auth/credentials.py -- Password hashing, token generation, and API key digests.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). Every hash_password()
       call draws a fresh salt, so two hashes of the same password differ but
       both verify. The work factor comes from Settings.bcrypt_rounds, which
       refuses to go below MIN_BCRYPT_ROUNDS [S1].

  Digests: verify_password() only accepts bcrypt modular-crypt strings. Rows
       carrying a legacy or plaintext value raise MalformedDigest instead of
       being compared -- callers treat that as a failed verification.

  Tokens: secrets.token_hex() over at least 16 bytes. Requests below that are
       rejected with WeakTokenRequest; the configured default is 32 bytes.

  API keys: "<prefix><64 hex chars>" material. Stored as HMAC-SHA256(SECRET_KEY,
       material) so lookup is O(1) and a leaked DB alone cannot be replayed.

  Entropy or primitive failures raise CryptoFailure. _DUMMY_HASH is computed at
  import, so a broken bcrypt/entropy source stops the process at startup rather
  than on the first login.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets

import bcrypt

from core.config import get_settings
from core.errors import CryptoFailure, InvalidPassword, MalformedDigest, WeakTokenRequest

logger = logging.getLogger("accessgate.credentials")

_settings = get_settings()

# Hard floor for any token request. Settings.token_bytes (default 32) sits above it.
MIN_TOKEN_REQUEST_BYTES = 16

# bcrypt silently ignores bytes past 72; reject instead of truncating.
_BCRYPT_MAX_BYTES = 72

_BCRYPT_RE = re.compile(r"^\$2[abxy]\$\d{2}\$[./A-Za-z0-9]{53}$")

# Length of the display-only prefix kept alongside each API key digest.
KEY_PREFIX_LENGTH = 12


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _encode_password(plain: str) -> bytes:
    if not plain:
        raise InvalidPassword("Password must not be empty.")
    encoded = plain.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        raise InvalidPassword(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes.")
    return encoded


def hash_password(plain: str) -> str:
    """Return a bcrypt digest of the given plaintext password.

    Raises InvalidPassword for empty or over-long input and CryptoFailure if
    salt generation or the hash primitive fails.
    """
    encoded = _encode_password(plain)
    try:
        salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
        return bcrypt.hashpw(encoded, salt).decode("utf-8")
    except (OSError, NotImplementedError, ValueError) as exc:
        raise CryptoFailure(f"bcrypt hashing failed: {exc}") from exc


def is_bcrypt_digest(value: str | None) -> bool:
    return bool(value) and _BCRYPT_RE.match(value) is not None


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt digest.

    Mismatch returns False. A digest that is not bcrypt at all raises
    MalformedDigest so callers can log the bad row; they must still treat it
    as a failed verification.
    """
    if not is_bcrypt_digest(hashed):
        raise MalformedDigest("Stored password digest is not a bcrypt hash.")
    if not plain:
        return False
    encoded = plain.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError as exc:
        raise MalformedDigest(f"bcrypt rejected the stored digest: {exc}") from exc


# Timing equalization dummy hash [C1].
# Computed once at module load. Always run verify_password() even when the
# email does not exist so response time does not reveal which accounts exist.
_DUMMY_HASH: str = hash_password("accessgate_timing_dummy")


def verify_dummy(plain: str) -> None:
    """Spend one bcrypt verification without a real digest [C1]."""
    verify_password(plain or "x", _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token generation
# ---------------------------------------------------------------------------


def generate_token(byte_length: int | None = None) -> str:
    """Return a hex token drawn from the OS CSPRNG.

    byte_length defaults to Settings.token_bytes. Anything below
    MIN_TOKEN_REQUEST_BYTES raises WeakTokenRequest.
    """
    if byte_length is None:
        byte_length = _settings.token_bytes
    if byte_length < MIN_TOKEN_REQUEST_BYTES:
        raise WeakTokenRequest(f"Tokens need at least {MIN_TOKEN_REQUEST_BYTES} bytes of entropy, got {byte_length}.")
    try:
        return secrets.token_hex(byte_length)
    except (OSError, NotImplementedError) as exc:
        raise CryptoFailure(f"Entropy source unavailable: {exc}") from exc


def generate_password() -> str:
    """One-time password for operator-driven provisioning.

    16 random bytes as 32 hex chars -- well inside bcrypt's 72-byte window.
    """
    return generate_token(MIN_TOKEN_REQUEST_BYTES)


# ---------------------------------------------------------------------------
# API key material
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate new key material in the format <prefix><hex token>."""
    return f"{_settings.api_key_prefix}{generate_token()}"


def hash_api_key(raw_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_key) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_key.encode(),
        hashlib.sha256,
    ).hexdigest()


def key_prefix(raw_key: str) -> str:
    return raw_key[:KEY_PREFIX_LENGTH]
