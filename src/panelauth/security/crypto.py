"""
PanelAuth Crypto Primitives
Password hashing, secure random tokens and constant-time comparison.
"""

import base64
import hashlib
import hmac
import secrets
import string
from typing import Tuple

import bcrypt

DEFAULT_BCRYPT_ROUNDS = 12

RANDOM_PASSWORD_CHARSET = string.ascii_letters + string.digits + "!@#$%^&*"


def _password_bytes(plain: str) -> bytes:
    # bcrypt reads at most 72 bytes; a fixed 44-byte digest keeps every byte significant
    digest = hashlib.sha256(plain.encode("utf-8")).digest()
    return base64.b64encode(digest)


def hash_password(plain: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Hash a password with bcrypt using a fresh salt"""
    hashed = bcrypt.hashpw(_password_bytes(plain), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Check a password against a bcrypt hash with bcrypt's own comparator"""
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed or foreign hash format
        return False


def secure_token(n: int = 32) -> str:
    """URL-safe encoding of n random bytes"""
    return secrets.token_urlsafe(n)


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def generate_api_key(prefix_length: int = 8) -> Tuple[str, str]:
    """
    Generate an API key secret.

    Returns the full key and its plaintext lookup prefix.
    """
    key = secure_token(32)
    return key, key[:prefix_length]


def generate_random_password(length: int = 16) -> str:
    """
    Generate a random password that satisfies the default policy.

    Length is clamped to 8..128 and every character class is represented.
    """
    length = max(8, min(128, length))
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice("!@#$%^&*"),
    ]
    rest = [secrets.choice(RANDOM_PASSWORD_CHARSET) for _ in range(length - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
