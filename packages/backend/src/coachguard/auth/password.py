"""Password hashing for the built-in credential provider.

Learn: bcrypt handles salting itself and is deliberately slow (work
factor from settings.bcrypt_rounds, 12 → ~100ms per hash). Passwords are
truncated to bcrypt's 72-byte limit.

Identities imported from older deployments may still carry salted
SHA-256 hashes ("salt$hexdigest"). Those verify, and the provider
re-hashes them with bcrypt on the next successful sign-in.

burn_verification() exists so a sign-in for an unknown email costs the
same as one with a wrong password — response timing must not reveal
which emails are registered.
"""

import hashlib
import secrets

import bcrypt

from coachguard.config import settings

# Hash of a random throwaway secret, computed lazily on first use.
_DUMMY_HASH: bytes | None = None


def hash_password(password: str) -> str:
    pw_bytes = password.encode("utf-8")[:72]
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(pw_bytes, salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a bcrypt or legacy SHA-256 hash."""
    if is_legacy_hash(password_hash):
        return _verify_legacy(password, password_hash)
    try:
        return bcrypt.checkpw(
            password.encode("utf-8")[:72], password_hash.encode("utf-8")
        )
    except (ValueError, TypeError):
        return False


def is_legacy_hash(password_hash: str) -> bool:
    return not password_hash.startswith("$2")


def burn_verification(password: str) -> None:
    """Spend one bcrypt check on a dummy hash. Result is discarded."""
    global _DUMMY_HASH
    if _DUMMY_HASH is None:
        _DUMMY_HASH = bcrypt.hashpw(
            secrets.token_bytes(16), bcrypt.gensalt(rounds=settings.bcrypt_rounds)
        )
    bcrypt.checkpw(password.encode("utf-8")[:72], _DUMMY_HASH)


def _verify_legacy(password: str, password_hash: str) -> bool:
    try:
        salt, hashed = password_hash.split("$", 1)
    except ValueError:
        return False
    expected = hashlib.sha256(f"{salt}{password}".encode()).hexdigest()
    return secrets.compare_digest(hashed, expected)
