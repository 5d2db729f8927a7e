"""
auth/passwords.py -- Password hashing and matching for realm user rows.

Security design decisions:
  bcrypt (default): used directly, no passlib wrapper. passlib's internal
       wrap-bug detection creates a password longer than 72 bytes, which
       bcrypt 4.x rejects with an explicit error. Passwords over 72 bytes are
       refused with ValidationError rather than silently truncated.

  Salted SHA (RFC 2307 "{SSHA}" family): supported for realms whose existing
       rows were written by other tooling, selected with
       encryption_algorithm = "SHA-1" | "SHA-256" | "SHA-384" | "SHA-512".
       Stored as "{SSHA512}" + base64(digest + salt).

  Plaintext rows: legacy tables sometimes hold the raw password. A stored
       value that carries no recognised scheme is compared as plaintext, with
       hmac.compare_digest so the comparison time does not leak a prefix match.

  _DUMMY_HASH enables timing equalization in the credential engine so
       response time does not reveal whether a username exists.

Layer rule: imports only core/ and third-party libraries.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets

import bcrypt

from core.errors import ConfigError, ValidationError

logger = logging.getLogger("realmauth.auth.passwords")

BCRYPT = "bcrypt"

_SHA_ALGORITHMS: dict[str, tuple[str, str]] = {
    # algorithm name -> (hashlib name, RFC 2307 scheme suffix)
    "SHA-1": ("sha1", ""),
    "SHA-256": ("sha256", "256"),
    "SHA-384": ("sha384", "384"),
    "SHA-512": ("sha512", "512"),
}
_SCHEMES: dict[str, str] = {suffix: name for name, suffix in _SHA_ALGORITHMS.values()}

_SALT_BYTES = 16
_BCRYPT_MAX_BYTES = 72
_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def normalize_algorithm(algorithm: str | None) -> str:
    """Canonical name of `algorithm` ("bcrypt", "SHA-1" ... "SHA-512"). ConfigError if unsupported."""
    if not algorithm:
        return BCRYPT
    name = algorithm.strip().upper().replace("_", "-")
    if name == "BCRYPT":
        return BCRYPT
    if name.startswith("SHA") and not name.startswith("SHA-"):
        name = "SHA-" + name[3:]
    if name not in _SHA_ALGORITHMS:
        raise ConfigError(f"Unsupported encryption algorithm {algorithm!r}")
    return name


def hash_password(plain: str, algorithm: str | None = None) -> str:
    """Return a storable hash of `plain` using `algorithm` (bcrypt when None)."""
    algorithm = normalize_algorithm(algorithm)
    if algorithm == BCRYPT:
        if len(plain.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            raise ValidationError(f"Password is longer than {_BCRYPT_MAX_BYTES} bytes, the bcrypt limit")
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
    hashlib_name, suffix = _SHA_ALGORITHMS[algorithm]
    salt = secrets.token_bytes(_SALT_BYTES)
    digest = hashlib.new(hashlib_name, plain.encode("utf-8") + salt).digest()
    return "{SSHA%s}%s" % (suffix, base64.b64encode(digest + salt).decode("ascii"))


def _match_rfc2307(plain: str, stored: str) -> bool:
    scheme, _, encoded = stored[1:].partition("}")
    scheme = scheme.upper()
    salted = scheme.startswith("SSHA")
    suffix = scheme[4:] if salted else scheme[3:]
    if not scheme.startswith(("SSHA", "SHA")) or suffix not in _SCHEMES:
        logger.debug("Unknown password scheme {%s}", scheme)
        return False
    hashlib_name = _SCHEMES[suffix]
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return False
    size = hashlib.new(hashlib_name).digest_size
    digest, salt = raw[:size], raw[size:] if salted else b""
    candidate = hashlib.new(hashlib_name, plain.encode("utf-8") + salt).digest()
    return hmac.compare_digest(candidate, digest)


def match_password(plain: str | None, stored: str | None) -> bool:
    """Return True if `plain` matches the stored value (bcrypt, {SSHA*}/{SHA*}, or plaintext)."""
    if plain is None or not stored:
        return False
    if stored.startswith(_BCRYPT_PREFIXES):
        if len(plain.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), stored.encode("utf-8"))
        except ValueError:
            return False
    if stored.startswith("{") and "}" in stored:
        return _match_rfc2307(plain, stored)
    return hmac.compare_digest(plain.encode("utf-8"), stored.encode("utf-8"))


class PasswordHasher:
    """Injectable hashing collaborator. Swap it out to plug in another scheme."""

    def check_algorithm(self, algorithm: str | None) -> str:
        return normalize_algorithm(algorithm)

    def hash(self, plain: str, algorithm: str | None = None) -> str:
        return hash_password(plain, algorithm)

    def match(self, plain: str | None, stored: str | None) -> bool:
        return match_password(plain, stored)


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt for an unknown user is not measurably faster than the rest.
_DUMMY_HASH: str = hash_password("realmauth_timing_dummy")
