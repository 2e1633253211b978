"""
Authentication utilities for the approval service.

This module provides API key generation, hashing, and validation, as well as
the FastAPI dependency that resolves the calling user.
"""

import hashlib
import secrets
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pipeline_common.models import User
from pipeline_common.repository import RunRepository

API_KEY_PREFIX = "pl_"

# HTTP Bearer token authentication scheme
security = HTTPBearer()


def generate_api_key() -> str:
    """
    Generate a new API key with format: pl_<40 random chars>.

    Returns:
        API key string, 43 characters long

    Example:
        >>> key = generate_api_key()
        >>> key.startswith("pl_")
        True
    """
    # 30 random bytes encode to 40 URL-safe characters
    random_part = secrets.token_urlsafe(30)[:40]
    return f"{API_KEY_PREFIX}{random_part}"


def hash_api_key(api_key: str) -> str:
    """
    Hash an API key using SHA-256 for storage.

    Only hashed keys are stored. The plaintext key is shown once during
    creation and must be saved by the user.
    """
    return hashlib.sha256(api_key.encode()).hexdigest()


def create_get_current_user_dependency(get_repository_func):  # type: ignore
    """
    Create a get_current_user dependency with repository injection.

    The repository getter lives in app.py; taking it as an argument avoids a
    circular import.

    Args:
        get_repository_func: Function that returns the RunRepository instance

    Returns:
        Async function that can be used as FastAPI dependency
    """

    async def get_current_user_with_repo(
        credentials: HTTPAuthorizationCredentials = Security(security),
        repository: RunRepository = Depends(get_repository_func),
    ) -> User:
        """
        Validate API key and return current user.

        Raises:
            HTTPException: 401 if the key is unknown, revoked, or belongs to
                an inactive user
        """
        key_hash = hash_api_key(credentials.credentials)
        api_key = await repository.get_api_key_by_hash(key_hash)

        if not api_key or not api_key.is_active:
            raise HTTPException(
                status_code=401,
                detail="Invalid or revoked API key",
                headers={"WWW-Authenticate": "Bearer"},
            )

        user = await repository.get_user(api_key.user_id)

        if not user or not user.is_active:
            raise HTTPException(
                status_code=401,
                detail="User not found or inactive",
                headers={"WWW-Authenticate": "Bearer"},
            )

        await repository.update_api_key_last_used(api_key.id, datetime.now(UTC))

        return user

    return get_current_user_with_repo
