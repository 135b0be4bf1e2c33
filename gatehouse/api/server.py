"""
Gatehouse HTTP API.

Local signup/login, third-party (OIDC) login and the signed session cookie.
`create_app()` wires a FastAPI app to one user store and one auth config; nothing is
registered process-wide.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional, Tuple

import requests
from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from gatehouse.auth.config import AuthConfig, load_auth_config
from gatehouse.auth.coordinator import AuthCoordinator
from gatehouse.auth.models import User
from gatehouse.auth.outcome import InfrastructureError, Outcome, Rejected, Success
from gatehouse.auth.rate_limit import RateLimiter
from gatehouse.auth.session import clear_session_cookie_kwargs, encode_session, session_cookie_kwargs
from gatehouse.storage.base import StoreError, UserStore
from gatehouse.storage.config import StoreConfig, load_store_config
from gatehouse.storage.factory import create_user_store

logger = logging.getLogger(__name__)

_OAUTH_COOKIE_PATH = "/api/auth"
_OAUTH_TTL_SECONDS = 10 * 60
_OAUTH_COOKIES = ("gatehouse_oauth_state", "gatehouse_oauth_nonce", "gatehouse_oauth_verifier", "gatehouse_oauth_next")

# bcrypt only hashes the first 72 bytes and refuses longer input.
_MAX_PASSWORD_BYTES = 72

router = APIRouter()


def _oauth_cookie_kwargs(cfg: AuthConfig, *, key: str, value: str, max_age: int) -> dict:
    return {
        "key": key,
        "value": value,
        "max_age": max_age,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": _OAUTH_COOKIE_PATH,
    }


def _is_public_path(path: str) -> bool:
    if path == "/healthz":
        return True
    # Login, signup and provider callback endpoints must be reachable without a session.
    if path.startswith(("/api/auth/login/", "/api/auth/signup/", "/api/auth/callback/")):
        return True
    # Allow logout even if the cookie is already missing/invalid.
    if path == "/api/auth/logout":
        return True
    # Mode discovery is used by the UI to render the available login options.
    return path == "/api/auth/mode"


def _auth_config(request: Request) -> AuthConfig:
    return request.app.state.auth_config


def _coordinator(request: Request) -> AuthCoordinator:
    return request.app.state.coordinator


def _user_view(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "provider": user.provider,
        "username": user.username,
        "displayName": user.display_name,
    }


def _require_session_secret(cfg: AuthConfig) -> None:
    if not cfg.session_secret:
        raise HTTPException(status_code=500, detail="Session signing is not configured (AUTH_SESSION_SECRET)")


def _session_cookie(request: Request, user: User) -> dict:
    cfg = _auth_config(request)
    value = encode_session(cfg, _coordinator(request).serialize_session(user))
    if not value:
        raise HTTPException(status_code=500, detail="Session signing is not configured (AUTH_SESSION_SECRET)")
    return session_cookie_kwargs(cfg, value)


def _user_or_raise(outcome: Outcome, *, rejected_status: int) -> User:
    """Map an Outcome onto HTTP: store failures are a generic 500, rejections carry their message."""
    if isinstance(outcome, InfrastructureError):
        logger.error("User store failure: %s", str(outcome.cause))
        raise HTTPException(status_code=500, detail="Internal server error")
    if isinstance(outcome, Rejected):
        raise HTTPException(status_code=rejected_status, detail=outcome.message)
    return outcome.user


def _read_credentials(credentials: Dict[str, str]) -> Tuple[str, str]:
    username = (credentials.get("username") or "").strip()
    password = credentials.get("password") or ""
    if not username or not password:
        raise HTTPException(status_code=400, detail="Missing username or password")
    if len(password.encode("utf-8")) > _MAX_PASSWORD_BYTES:
        raise HTTPException(status_code=400, detail=f"Password must be at most {_MAX_PASSWORD_BYTES} bytes")
    return username, password


def _logged_in_response(request: Request, user: User) -> JSONResponse:
    resp = JSONResponse(content={"ok": True, "user": _user_view(user)})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**_session_cookie(request, user))
    return resp


def _oidc_redirect_uri(cfg: AuthConfig) -> str:
    uri = cfg.callback_url()
    if not uri:
        raise HTTPException(status_code=500, detail="AUTH_PUBLIC_BASE_URL or OIDC_CALLBACK_URL is required for OIDC")
    return uri


async def log_requests(request: Request, call_next):
    """Log every request and require a session outside the public paths."""
    start_time = time.time()
    logger.debug("%s %s", request.method, request.url.path)
    try:
        path = request.url.path or ""
        if request.method != "OPTIONS" and not _is_public_path(path):
            from gatehouse.auth.deps import authenticate_request

            try:
                user = await authenticate_request(request)
            except StoreError as e:
                logger.error("Session lookup failed: %s", str(e))
                return JSONResponse(status_code=500, content={"detail": "Internal server error"})
            if user is None:
                # No `WWW-Authenticate`: browsers would pop a basic-auth modal over the login UI.
                return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
            request.state.user = user

        response = await call_next(request)
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise


@router.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@router.post("/api/auth/signup/local")
async def auth_signup_local(request: Request, credentials: Dict[str, str]) -> JSONResponse:
    """Create a local account and start a session for it."""
    cfg = _auth_config(request)
    if not cfg.signup_enabled:
        raise HTTPException(status_code=403, detail="Signup is not enabled")
    username, password = _read_credentials(credentials)
    _require_session_secret(cfg)

    outcome = await _coordinator(request).signup(username, password)
    user = _user_or_raise(outcome, rejected_status=409)
    return _logged_in_response(request, user)


@router.post("/api/auth/login/local")
async def auth_login_local(request: Request, credentials: Dict[str, str]) -> JSONResponse:
    """
    Local username/password authentication.
    Rate-limited per username to slow down password guessing.
    """
    cfg = _auth_config(request)
    username, password = _read_credentials(credentials)
    _require_session_secret(cfg)

    rate_limiter: RateLimiter = request.app.state.rate_limiter
    if rate_limiter.is_limited(username):
        raise HTTPException(status_code=429, detail="Too many login attempts. Please try again later.")

    outcome = await _coordinator(request).login(username, password)
    # Only rejections count toward the limit; store failures leave it unchanged.
    if isinstance(outcome, Rejected):
        rate_limiter.record_failure(username)
    elif isinstance(outcome, Success):
        rate_limiter.reset(username)
    user = _user_or_raise(outcome, rejected_status=401)
    return _logged_in_response(request, user)


@router.get("/api/auth/login/oidc")
async def auth_login_oidc(request: Request, next_path: str = Query("/", alias="next")):
    """Start the provider login: redirect to the provider with state/nonce/PKCE."""
    from gatehouse.auth.oidc import build_authorize_url, pkce_challenge, random_token, sanitize_next_path

    cfg = _auth_config(request)
    if not cfg.oidc_enabled:
        raise HTTPException(status_code=403, detail="OIDC auth is not enabled")
    redirect_uri = _oidc_redirect_uri(cfg)

    state = random_token(32)
    nonce = random_token(32)
    verifier = random_token(32)  # 43 chars base64url -> valid PKCE verifier
    try:
        url = await run_in_threadpool(
            build_authorize_url,
            cfg,
            redirect_uri=redirect_uri,
            state=state,
            nonce=nonce,
            code_challenge=pkce_challenge(verifier),
        )
    except (ValueError, requests.RequestException) as e:
        logger.warning("OIDC authorize URL unavailable: %s", str(e))
        raise HTTPException(status_code=502, detail="Identity provider unavailable")

    resp = RedirectResponse(url=url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    values = (state, nonce, verifier, sanitize_next_path(next_path))
    for key, value in zip(_OAUTH_COOKIES, values):
        resp.set_cookie(**_oauth_cookie_kwargs(cfg, key=key, value=value, max_age=_OAUTH_TTL_SECONDS))
    return resp


@router.get("/api/auth/callback/oidc")
async def auth_callback_oidc(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    """Finish the provider login, then find or create the matching user."""
    from gatehouse.auth.oidc import exchange_code_for_tokens, profile_from_tokens, sanitize_next_path, validate_id_token

    cfg = _auth_config(request)
    if not cfg.oidc_enabled:
        raise HTTPException(status_code=403, detail="OIDC auth is not enabled")
    redirect_uri = _oidc_redirect_uri(cfg)
    _require_session_secret(cfg)

    cookie_state = (request.cookies.get("gatehouse_oauth_state") or "").strip()
    cookie_nonce = (request.cookies.get("gatehouse_oauth_nonce") or "").strip()
    cookie_verifier = (request.cookies.get("gatehouse_oauth_verifier") or "").strip()
    cookie_next = sanitize_next_path(request.cookies.get("gatehouse_oauth_next"))

    if not cookie_state or cookie_state != (state or "").strip():
        raise HTTPException(status_code=400, detail="Invalid OAuth state")
    if not cookie_nonce or not cookie_verifier:
        raise HTTPException(status_code=400, detail="Missing OAuth verifier/nonce")
    if error or not code:
        # Provider denied or cancelled the login (`?error=access_denied`).
        logger.warning("OIDC callback without code: error=%s", error or "missing_code")
        raise HTTPException(status_code=400, detail="OIDC login failed")

    try:
        tokens = await run_in_threadpool(
            exchange_code_for_tokens, cfg, redirect_uri=redirect_uri, code=code, code_verifier=cookie_verifier
        )
        id_token = str(tokens.get("id_token") or "").strip()
        if not id_token:
            raise ValueError("Missing id_token in token response")
        claims = await run_in_threadpool(validate_id_token, cfg, id_token=id_token, expected_nonce=cookie_nonce)
        profile = profile_from_tokens(tokens, claims)
    except ValueError as e:
        logger.warning("OIDC callback rejected: %s", str(e))
        raise HTTPException(status_code=400, detail="OIDC login failed")
    except requests.RequestException as e:
        logger.warning("OIDC provider request failed: %s", str(e))
        raise HTTPException(status_code=502, detail="Identity provider unavailable")

    outcome = await _coordinator(request).third_party_login(
        profile.provider_id, profile.token, profile.display_name, username=profile.username
    )
    user = _user_or_raise(outcome, rejected_status=403)

    resp = RedirectResponse(url=cookie_next, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**_session_cookie(request, user))
    for key in _OAUTH_COOKIES:
        resp.set_cookie(**_oauth_cookie_kwargs(cfg, key=key, value="", max_age=0))
    return resp


@router.post("/api/auth/logout")
async def auth_logout(request: Request) -> JSONResponse:
    resp = JSONResponse(content={"ok": True})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**clear_session_cookie_kwargs(_auth_config(request)))
    return resp


@router.get("/api/auth/me")
async def auth_me(request: Request) -> Dict[str, Any]:
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return {"ok": True, "user": _user_view(user)}


@router.get("/api/auth/mode")
async def auth_mode(request: Request) -> Dict[str, Any]:
    """
    Expose the configured auth options so the UI can render the right login form.
    Public; returns no secrets.
    """
    cfg = _auth_config(request)
    result: Dict[str, Any] = {
        "ok": True,
        "localEnabled": cfg.local_enabled,
        "signupEnabled": cfg.signup_enabled,
        "oidcEnabled": cfg.oidc_enabled,
    }

    if cfg.oidc_enabled:
        from gatehouse.auth.oidc import get_provider_metadata

        try:
            metadata = await run_in_threadpool(get_provider_metadata, cfg)
            result["oidcProvider"] = {
                "name": metadata["name"],
                "logo": metadata["logo"],
                "loginUrl": "/api/auth/login/oidc",
            }
        except (ValueError, requests.RequestException) as e:
            # If we can't reach the provider, OIDC is effectively disabled
            logger.warning("Failed to get OIDC provider metadata: %s", str(e))
            result["oidcEnabled"] = False

    return result


def create_app(
    *,
    store: Optional[UserStore] = None,
    auth_config: Optional[AuthConfig] = None,
    store_config: Optional[StoreConfig] = None,
) -> FastAPI:
    """
    Build the API around one user store and one auth config.

    Both default to what the environment describes (see load_auth_config/load_store_config).
    """
    cfg = auth_config or load_auth_config()
    store_cfg = store_config or load_store_config()
    if store is None:
        store = create_user_store(store_cfg)

    app = FastAPI(title="Gatehouse")
    app.state.auth_config = cfg
    app.state.store = store
    app.state.coordinator = AuthCoordinator(store, cfg)
    app.state.rate_limiter = RateLimiter(max_attempts=cfg.login_max_attempts, window_seconds=cfg.login_window_seconds)

    app.middleware("http")(log_requests)
    app.include_router(router)

    @app.on_event("startup")
    def _startup_maybe_migrate_db() -> None:
        """
        Optional: apply DB migrations when DB_AUTO_MIGRATE=1 and the Postgres store is used.
        Failures are logged and never prevent startup.
        """
        from gatehouse.storage.migrate import maybe_auto_migrate

        did_attempt, msg = maybe_auto_migrate(store_cfg)
        if did_attempt:
            logger.info("DB migrations: %s", msg)

        logger.info(
            "Auth config: store=%s signup_enabled=%s oidc_enabled=%s cookie_secure=%s",
            store_cfg.backend,
            cfg.signup_enabled,
            cfg.oidc_enabled,
            cfg.cookie_secure,
        )
        if store_cfg.uses_postgres:
            logger.info("User store database: %s", store_cfg.postgres.target())
        if not cfg.session_secret:
            logger.warning("AUTH_SESSION_SECRET is not set; logins will fail until it is configured")

    return app


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting Gatehouse on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(create_app(), host=host, port=port, log_level=uvicorn_log_level)
