"""
Security utilities for API key authentication.

Keys look like ``<prefix>.<secret>``. The prefix is stored in clear text for an
indexed lookup; the full key is verified against a bcrypt hash.
"""
import secrets
import time
from datetime import datetime
from typing import Dict, Optional, Tuple
from uuid import UUID

import bcrypt
from fastapi import Depends, Security
from fastapi.security import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from atlas.core.config import settings
from atlas.core.database import get_db
from atlas.core.exceptions import AuthenticationRequiredError
from atlas.models.api_key import ApiKey


# API Key header
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Cache for verified API keys: {api_key: (user_id, expiry_time)}
_api_key_cache: Dict[str, Tuple[str, float]] = {}
_CACHE_TTL = 300  # 5 minutes
_CACHE_MAX_SIZE = 10000  # bound memory under key-spraying


def invalidate_api_key_cache() -> int:
    """
    Drop all cached key verifications.

    Returns:
        Number of cache entries invalidated.
    """
    count = len(_api_key_cache)
    _api_key_cache.clear()
    return count


def hash_api_key(api_key: str, salt: str) -> str:
    """
    Hash an API key using bcrypt.

    Args:
        api_key: The API key to hash
        salt: Application salt appended before hashing

    Returns:
        The hashed API key
    """
    combined = f"{api_key}{salt}".encode()
    return bcrypt.hashpw(combined, bcrypt.gensalt()).decode()


def verify_api_key_hash(api_key: str, key_hash: str, salt: str) -> bool:
    combined = f"{api_key}{salt}".encode()
    return bcrypt.checkpw(combined, key_hash.encode())


def generate_api_key(salt: str) -> Tuple[str, str, str]:
    """
    Create a new key.

    Returns:
        Tuple of (full key to hand to the user, prefix, hash to store)
    """
    prefix = secrets.token_hex(4)
    key = f"{prefix}.{secrets.token_urlsafe(32)}"
    return key, prefix, hash_api_key(key, salt)


def _cache_put(api_key: str, user_id: str) -> None:
    if len(_api_key_cache) >= _CACHE_MAX_SIZE:
        # Drop the oldest tenth
        oldest = sorted(_api_key_cache.items(), key=lambda item: item[1][1])[:_CACHE_MAX_SIZE // 10]
        for old_key, _ in oldest:
            del _api_key_cache[old_key]
    _api_key_cache[api_key] = (user_id, time.time() + _CACHE_TTL)


async def get_user_id_for_key(api_key: str, db: AsyncSession) -> Optional[UUID]:
    """
    Validate an API key and return the id of the user it belongs to.

    Returns:
        User id if the key is valid, active and unexpired; None otherwise
    """
    cached = _api_key_cache.get(api_key)
    if cached:
        user_id, expiry = cached
        if time.time() < expiry:
            return UUID(user_id)
        del _api_key_cache[api_key]

    if "." not in api_key:
        return None
    prefix = api_key.split(".", 1)[0]

    result = await db.execute(
        select(ApiKey).where(ApiKey.prefix == prefix).where(ApiKey.is_active.is_(True))
    )
    db_key = result.scalar_one_or_none()
    if not db_key:
        return None
    if not verify_api_key_hash(api_key, db_key.key_hash, settings.API_KEY_SALT):
        return None
    if db_key.expires_at and db_key.expires_at < datetime.utcnow():
        return None

    db_key.last_used_at = datetime.utcnow()
    await db.commit()
    _cache_put(api_key, str(db_key.user_id))
    return db_key.user_id


async def get_current_user_id(
    api_key: Optional[str] = Security(api_key_header),
    db: AsyncSession = Depends(get_db),
) -> UUID:
    """
    Dependency resolving the calling user.

    Without a valid key the caller is the anonymous user when
    ``ALLOW_ANONYMOUS`` is set, otherwise the request is rejected.
    """
    if api_key:
        user_id = await get_user_id_for_key(api_key, db)
        if user_id:
            return user_id

    if settings.ALLOW_ANONYMOUS:
        return UUID(settings.ANONYMOUS_USER_ID)
    raise AuthenticationRequiredError()
