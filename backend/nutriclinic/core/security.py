"""Security utilities - password hashing and opaque token handling"""

import base64
import hashlib
import secrets

import bcrypt

from nutriclinic.config import settings

# Used to keep login timing uniform when the email is unknown.
_DUMMY_HASH = bcrypt.hashpw(b"timing-equalizer", bcrypt.gensalt(rounds=4)).decode("utf-8")


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        str: Salted bcrypt hash
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    ).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        # Over-long input or a corrupt stored hash never matches.
        return False


def burn_password_check(plain_password: str) -> None:
    """Spend one bcrypt comparison without a real account behind it."""
    verify_password(plain_password, _DUMMY_HASH)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def hash_opaque_token(token: str) -> str:
    """
    Deterministic SHA-256 digest (base64url) of a high-entropy secret.

    Refresh tokens, verification codes and reset tokens are stored only in
    this form and looked up by re-hashing the presented value.
    """
    return _b64url(hashlib.sha256(token.encode("utf-8")).digest())


def generate_opaque_token(byte_length: int = 32) -> str:
    """Cryptographically random base64url string of ``byte_length`` bytes."""
    if byte_length < 16:
        raise ValueError("Opaque tokens need at least 16 bytes of entropy")
    return secrets.token_urlsafe(byte_length)


def generate_numeric_code(digits: int = 6) -> str:
    """Zero-padded random numeric code for manual entry."""
    return str(secrets.randbelow(10 ** digits)).zfill(digits)


def constant_time_equals(a: str, b: str) -> bool:
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
