"""Credential utilities for ripple."""

import hashlib
import secrets


def generate_token() -> str:
    """Generate a new random access token (64 hex chars = 32 bytes)."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """Hash a token for storage/comparison. Returns full SHA-256."""
    return hashlib.sha256(token.encode()).hexdigest()


def derive_user_id(token: str) -> str:
    """Derive the public user ID from a token. Returns first 16 chars of SHA-256."""
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def verify_token(token: str, expected_hash: str) -> bool:
    """Verify a token against its stored hash."""
    return secrets.compare_digest(hash_token(token), expected_hash)


def verify_admin_token(token: str | None, expected: str | None) -> bool:
    """Constant-time comparison for the static admin token."""
    if not token or not expected:
        return False
    return secrets.compare_digest(token, expected)
