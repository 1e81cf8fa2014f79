"""Shared route dependencies."""

from __future__ import annotations

from typing import Optional

from fastapi import Header

from ..errors import Unauthenticated
from ..services.auth import bearer_token, resolve_user


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> str:
    """Return the id of the signed-in caller or reject with 401."""

    user_id = await resolve_user(bearer_token(authorization))
    if user_id is None:
        raise Unauthenticated()
    return user_id
