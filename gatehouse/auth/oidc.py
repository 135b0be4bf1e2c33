"""
Third-party login over OpenID Connect (authorization code + PKCE).

This module only talks to the provider: discovery, authorize URL, code exchange and
id_token validation. What to do with the resulting identity is up to
AuthCoordinator.third_party_login().
"""
from __future__ import annotations

import base64
import hashlib
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import jwt  # PyJWT
import requests

from gatehouse.auth.config import AuthConfig

_CACHE_TTL_SECONDS = 3600
_HTTP_TIMEOUT_SECONDS = 10

_discovery_cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
_jwks_cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}

_KNOWN_PROVIDERS = (
    # (substring of issuer/discovery URL, display name, logo)
    ("google", "Google", "https://www.google.com/favicon.ico"),
    ("okta", "Okta", "https://www.okta.com/favicon.ico"),
    ("microsoft", "Microsoft", "https://www.microsoft.com/favicon.ico"),
    ("azure", "Microsoft", "https://www.microsoft.com/favicon.ico"),
    ("auth0", "Auth0", "https://cdn.auth0.com/styleguide/latest/lib/logos/img/favicon.png"),
)


@dataclass(frozen=True)
class ProviderProfile:
    """Identity returned by the provider, as needed for third-party login."""

    provider_id: str  # `sub` claim
    token: str  # access token from the token response
    display_name: Optional[str] = None
    username: Optional[str] = None


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(secrets.token_bytes(nbytes))


def pkce_challenge(verifier: str) -> str:
    """S256 PKCE challenge for a verifier."""
    return b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def sanitize_next_path(next_path: str | None) -> str:
    """
    Prevent open-redirects: allow only relative paths like `/account`.
    """
    p = (next_path or "").strip().replace("\r", "").replace("\n", "")
    # Reject absolute and scheme-relative (`//evil.com`, `/\evil.com`) targets.
    if not p.startswith("/") or p.startswith("//") or p.startswith("/\\"):
        return "/"
    return p


def _get_cached_json(cache: Dict[str, Tuple[float, Dict[str, Any]]], url: str, what: str) -> Dict[str, Any]:
    now = time.time()
    hit = cache.get(url)
    if hit is not None and now - hit[0] < _CACHE_TTL_SECONDS:
        return hit[1]
    r = requests.get(url, timeout=_HTTP_TIMEOUT_SECONDS)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError(f"Invalid {what}")
    cache[url] = (now, data)
    return data


def _get_discovery(discovery_url: str) -> Dict[str, Any]:
    """Fetch the provider's discovery document (cached for an hour)."""
    return _get_cached_json(_discovery_cache, discovery_url, "OIDC discovery document")


def _get_jwks(jwks_uri: str) -> Dict[str, Any]:
    """Fetch the provider's signing keys (cached for an hour)."""
    return _get_cached_json(_jwks_cache, jwks_uri, "JWKS")


def _require_discovery(cfg: AuthConfig) -> Dict[str, Any]:
    if not cfg.oidc_discovery_url:
        raise ValueError("OIDC discovery URL not configured")
    if not cfg.oidc_client_id:
        raise ValueError("OIDC client ID not configured")
    return _get_discovery(cfg.oidc_discovery_url)


def get_provider_metadata(cfg: AuthConfig) -> Dict[str, str]:
    """
    Provider display metadata (name, logo) for the login page.
    Configured overrides win over values guessed from the issuer.
    """
    disc = _require_discovery(cfg)
    issuer = str(disc.get("issuer") or "")
    haystack = f"{issuer} {cfg.oidc_discovery_url or ''}".lower()

    guessed_name, guessed_logo = "", ""
    for needle, name, logo in _KNOWN_PROVIDERS:
        if needle in haystack:
            guessed_name, guessed_logo = name, logo
            break
    if not guessed_name:
        host = urlparse(issuer).netloc
        guessed_name = host.split(".")[0].title() if host else "SSO Provider"

    return {
        "name": cfg.oidc_provider_name or guessed_name,
        "logo": cfg.oidc_provider_logo or guessed_logo,
    }


def build_authorize_url(
    cfg: AuthConfig,
    *,
    redirect_uri: str,
    state: str,
    nonce: str,
    code_challenge: str,
) -> str:
    disc = _require_discovery(cfg)
    auth_endpoint = str(disc.get("authorization_endpoint") or "")
    if not auth_endpoint:
        raise ValueError("OIDC discovery missing authorization_endpoint")

    params = {
        "client_id": cfg.oidc_client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": "openid profile",
        "state": state,
        "nonce": nonce,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{auth_endpoint}?{urlencode(params)}"


def exchange_code_for_tokens(
    cfg: AuthConfig,
    *,
    redirect_uri: str,
    code: str,
    code_verifier: str,
) -> Dict[str, Any]:
    """Exchange the authorization code for tokens (id_token, access_token)."""
    disc = _require_discovery(cfg)
    if not cfg.oidc_client_secret:
        raise ValueError("OIDC client secret not configured")
    token_endpoint = str(disc.get("token_endpoint") or "")
    if not token_endpoint:
        raise ValueError("OIDC discovery missing token_endpoint")

    payload = {
        "client_id": cfg.oidc_client_id,
        "client_secret": cfg.oidc_client_secret,
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
    }
    r = requests.post(token_endpoint, data=payload, timeout=_HTTP_TIMEOUT_SECONDS)
    if r.status_code >= 400:
        # Avoid leaking provider error bodies; status is enough to debug.
        raise ValueError(f"Token exchange failed (status={r.status_code})")
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid token response")
    return data


def validate_id_token(
    cfg: AuthConfig,
    *,
    id_token: str,
    expected_nonce: str,
) -> Dict[str, Any]:
    """
    Validate the provider's ID token.
    - Verifies JWT signature against the provider's published keys
    - Validates issuer, audience, expiry and nonce
    """
    disc = _require_discovery(cfg)
    issuer = str(disc.get("issuer") or "")
    jwks_uri = str(disc.get("jwks_uri") or "")
    if not issuer or not jwks_uri:
        raise ValueError("OIDC discovery missing issuer/jwks_uri")

    try:
        kid = str(jwt.get_unverified_header(id_token).get("kid") or "")
    except jwt.InvalidTokenError as e:
        raise ValueError("Malformed ID token") from e
    if not kid:
        raise ValueError("ID token missing kid")

    keys = _get_jwks(jwks_uri).get("keys")
    if not isinstance(keys, list):
        raise ValueError("Invalid JWKS keys")
    jwk = next((k for k in keys if isinstance(k, dict) and str(k.get("kid") or "") == kid), None)
    if jwk is None:
        raise ValueError("Unknown signing key (kid)")

    key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))
    try:
        claims = jwt.decode(
            id_token,
            key=key,
            algorithms=["RS256"],
            audience=cfg.oidc_client_id,
            issuer=issuer,
            options={"require": ["exp", "iat", "iss", "aud", "sub"]},
        )
    except jwt.InvalidTokenError as e:
        raise ValueError(f"Invalid ID token: {e}") from e

    nonce = str(claims.get("nonce") or "")
    if not nonce or not secrets.compare_digest(nonce, expected_nonce):
        raise ValueError("Nonce mismatch")
    return claims


def profile_from_tokens(tokens: Dict[str, Any], claims: Dict[str, Any]) -> ProviderProfile:
    """Map the token response and validated claims onto a ProviderProfile."""
    sub = str(claims.get("sub") or "").strip()
    if not sub:
        raise ValueError("ID token missing sub")
    access_token = str(tokens.get("access_token") or "").strip()
    if not access_token:
        raise ValueError("Missing access_token in token response")
    username = str(claims.get("preferred_username") or claims.get("nickname") or "").strip() or None
    display_name = str(claims.get("name") or "").strip() or username
    return ProviderProfile(provider_id=sub, token=access_token, display_name=display_name, username=username)
