from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

# Codes are typed by hand, so leave out characters that read alike (0/O, 1/I/L).
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

MIN_TOKEN_BYTES = 20


def generate_token(num_bytes: int = MIN_TOKEN_BYTES) -> str:
    """Return a random carrier token: lowercase base32 without padding.

    20 bytes gives 160 bits of entropy; shorter requests are rejected.
    """
    if num_bytes < MIN_TOKEN_BYTES:
        raise ValueError(f"tokens need at least {MIN_TOKEN_BYTES} random bytes")
    raw = secrets.token_bytes(num_bytes)
    return base64.b32encode(raw).decode("ascii").rstrip("=").lower()


def generate_code(length: int = 8) -> str:
    """Return a short human-enterable code drawn from ``CODE_ALPHABET``."""
    if length <= 0:
        raise ValueError("code length must be positive")
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used as the storage and lookup key for ``raw``."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def tokens_match(presented: str, stored_hash: str) -> bool:
    """Constant-time comparison of a presented secret against a stored hash."""
    return hmac.compare_digest(hash_token(presented), stored_hash)


__all__ = [
    "CODE_ALPHABET",
    "MIN_TOKEN_BYTES",
    "generate_code",
    "generate_token",
    "hash_token",
    "tokens_match",
]
