"""Pluggable credential validation for ripple.

Tokens are validated once per connection. The source of truth can be
configured via environment variables:
- RIPPLE_AUTH_MODULE: Python module path for custom auth (e.g., 'myapp.auth')
- RIPPLE_AUTH_URL: If set, uses the built-in remote verify endpoint integration

With neither set, tokens are checked against the local users table.

Custom auth modules must expose:
- verify_bearer_token(token: str) -> AuthResult
- extract_bearer_token(authorization: str | None) -> str | None (optional)

The AuthResult dataclass is provided by this module for custom implementations.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import os
from dataclasses import dataclass
from types import ModuleType

from .auth import derive_user_id, verify_token
from .cache import TTLCache
from .errors import InvalidCredential
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class AuthResult:
    """Result of an authentication attempt."""

    valid: bool
    user_id: str | None = None
    name: str | None = None
    metadata: dict | None = None
    error: str | None = None


def _get_auth_module() -> ModuleType | None:
    """Get the configured auth module, or None for local validation."""
    custom_module = os.environ.get("RIPPLE_AUTH_MODULE")
    if custom_module:
        try:
            return importlib.import_module(custom_module)
        except ImportError as e:
            raise ImportError(f"Failed to import auth module '{custom_module}': {e}") from e

    if os.environ.get("RIPPLE_AUTH_URL"):
        from . import remote_auth

        return remote_auth

    return None


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Uses custom module's implementation if available, otherwise default.

    Args:
        authorization: The full Authorization header value

    Returns:
        The token if valid Bearer format, None otherwise
    """
    module = _get_auth_module()
    if module and hasattr(module, "extract_bearer_token"):
        return module.extract_bearer_token(authorization)

    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip() or None


def get_auth_method_name() -> str:
    """Get the name of the current auth method for logging/debugging."""
    custom_module = os.environ.get("RIPPLE_AUTH_MODULE")
    if custom_module:
        return f"custom:{custom_module}"

    if os.environ.get("RIPPLE_AUTH_URL"):
        return "remote"

    return "local"


class CredentialValidator:
    """Maps an opaque token to a user ID.

    Args:
        store: Persistence layer holding local token hashes
        cache_ttl: Seconds a looked-up token hash stays cached
        auth_module: Explicit auth module. Defaults to the environment configuration.
    """

    def __init__(
        self,
        store: Store,
        cache_ttl: float = 300.0,
        auth_module: ModuleType | None = None,
    ):
        self.store = store
        self._module = auth_module if auth_module is not None else _get_auth_module()
        self._hashes = TTLCache(name="credentials", default_ttl=cache_ttl, max_size=10000)
        logger.info(f"Credential validation: {self.method_name}")

    @property
    def method_name(self) -> str:
        if self._module is None:
            return "local"
        return f"module:{self._module.__name__}"

    async def validate(self, token: str | None) -> str:
        """Validate a token.

        Returns:
            The user ID the token belongs to.

        Raises:
            InvalidCredential: If the token is missing or rejected.
        """
        if not token:
            raise InvalidCredential("Missing credential")

        if self._module is not None:
            loop = asyncio.get_running_loop()
            result: AuthResult = await loop.run_in_executor(
                None, self._module.verify_bearer_token, token
            )
            if not result.valid or not result.user_id:
                raise InvalidCredential(result.error or "Invalid credential")
            return result.user_id

        user_id = derive_user_id(token)
        hit, token_hash = self._hashes.get(user_id)
        if not hit:
            token_hash = await self.store.get_user_token_hash(user_id)
            if token_hash is not None:
                self._hashes.set(user_id, token_hash)

        if token_hash is None or not verify_token(token, token_hash):
            raise InvalidCredential("Invalid credential")
        return user_id
