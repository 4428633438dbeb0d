"""Token verification against a remote HTTP auth service.

The service receives ``POST {RIPPLE_AUTH_URL}/verify`` with ``{"token": ...}``
and answers with ``{"valid": bool, "user_id": str, ...}``.
"""

import os

import httpx

from .auth_provider import AuthResult


def get_auth_url() -> str | None:
    """Get the auth service URL from environment."""
    return os.environ.get("RIPPLE_AUTH_URL")


def is_enabled() -> bool:
    return bool(get_auth_url())


def verify_bearer_token(token: str) -> AuthResult:
    """
    Verify a token against the remote auth service.

    Args:
        token: The opaque token presented by the client

    Returns:
        AuthResult with validation status and the resolved user ID
    """
    auth_url = get_auth_url()
    if not auth_url:
        return AuthResult(valid=False, error="RIPPLE_AUTH_URL not configured")

    try:
        response = httpx.post(
            f"{auth_url.rstrip('/')}/verify",
            json={"token": token},
            timeout=5.0,
        )

        if response.status_code == 200:
            data = response.json()
            return AuthResult(
                valid=data.get("valid", False),
                user_id=data.get("user_id"),
                name=data.get("name"),
                metadata=data.get("metadata", {}),
                error=data.get("error"),
            )
        else:
            return AuthResult(
                valid=False,
                error=f"Auth service returned {response.status_code}",
            )
    except httpx.RequestError as e:
        return AuthResult(valid=False, error=f"Auth service unavailable: {e}")
