from __future__ import annotations

from typing import Optional

from fastapi import Request

from gatehouse.auth.models import User
from gatehouse.auth.session import decode_session, session_cookie_name


async def authenticate_request(request: Request) -> Optional[User]:
    """
    Resolve the session cookie to a user, or None if absent/invalid/unknown.

    StoreError from the user lookup is not caught; the caller decides how to fail.
    """
    cfg = request.app.state.auth_config
    coordinator = request.app.state.coordinator

    token = decode_session(cfg, request.cookies.get(session_cookie_name(cfg)))
    if token is None:
        return None
    return await coordinator.deserialize_session(token)
