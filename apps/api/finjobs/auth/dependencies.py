from __future__ import annotations

from typing import Optional

from fastapi import Header

from finjobs.core.errors import UnauthorizedError


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> str:
    """Return the calling user's id.

    Authentication happens upstream (gateway); the API trusts the
    ``X-User-ID`` header it forwards.
    """
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("Missing X-User-ID header")
    return x_user_id.strip()
