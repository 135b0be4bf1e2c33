from __future__ import annotations

import json
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from gatehouse.auth.config import AuthConfig


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-gatehouse_session" if cfg.cookie_secure else "gatehouse_session"


SESSION_SALT = "gatehouse-session-v1"


def _serializer(cfg: AuthConfig) -> Optional[URLSafeTimedSerializer]:
    if not cfg.session_secret:
        return None
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def encode_session(cfg: AuthConfig, session_token: str) -> Optional[str]:
    """
    Sign a serialized session (the user id) into a cookie value.

    Returns None when AUTH_SESSION_SECRET is not configured.
    """
    s = _serializer(cfg)
    if s is None:
        return None
    # Keep cookie small and non-sensitive: only the user id travels.
    raw = json.dumps({"uid": session_token}, separators=(",", ":"), sort_keys=True)
    return s.dumps(raw)


def decode_session(cfg: AuthConfig, value: str | None) -> Optional[str]:
    """Return the session token (user id) from a signed cookie value, or None if invalid/expired."""
    if not value:
        return None
    s = _serializer(cfg)
    if s is None:
        return None
    try:
        raw = s.loads(value, max_age=cfg.session_ttl_seconds)
        data = json.loads(raw)
    except (BadSignature, ValueError):
        # SignatureExpired/BadTimeSignature subclass BadSignature.
        return None
    if not isinstance(data, dict):
        return None
    uid = str(data.get("uid") or "").strip()
    return uid or None


def clear_session_cookie_kwargs(cfg: AuthConfig) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def session_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
