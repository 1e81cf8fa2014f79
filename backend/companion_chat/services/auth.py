"""Bearer-token sessions."""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional

from ..storage import AuthSession, get_db_manager


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def issue_session(user_id: str, ttl: Optional[timedelta] = None) -> str:
    """Create a session for ``user_id`` and return the raw token."""
    token = secrets.token_urlsafe(32)
    expires_at = datetime.utcnow() + ttl if ttl is not None else None
    db = await get_db_manager()
    async with db.session() as session:
        session.add(AuthSession(token_hash=hash_token(token), user_id=user_id, expires_at=expires_at))
    return token


async def resolve_user(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    db = await get_db_manager()
    async with db.session() as session:
        record = await session.get(AuthSession, hash_token(token))
    if record is None:
        return None
    if record.expires_at is not None and record.expires_at <= datetime.utcnow():
        return None
    return record.user_id
