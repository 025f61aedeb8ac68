"""User CRUD operations."""

import hashlib
import secrets
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studygate.app.db.models import User

API_KEY_PREFIX = "sg-"


def hash_api_key(api_key: str) -> str:
    """SHA-256 hex digest of a raw API key."""
    return hashlib.sha256(api_key.encode()).hexdigest()


def generate_api_key() -> str:
    """Generate a new random API key."""
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


async def lookup_user_by_hash(session: AsyncSession, api_key_hash: str) -> Optional[User]:
    """Find the user owning an API key hash."""
    result = await session.execute(
        select(User).where(User.api_key_hash == api_key_hash)
    )
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    email: str,
    api_key: str | None = None,
    auto_commit: bool = True,
) -> Tuple[User, str]:
    """Create a user and return it together with the raw API key.

    The raw key is only available here; the database stores its hash.
    """
    api_key = api_key or generate_api_key()
    user = User(email=email, api_key_hash=hash_api_key(api_key))
    session.add(user)
    if auto_commit:
        await session.commit()
        await session.refresh(user)
    else:
        await session.flush()
    return user, api_key
