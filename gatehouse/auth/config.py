from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

OIDC_CALLBACK_PATH = "/api/auth/callback/oidc"


@dataclass(frozen=True)
class AuthConfig:
    # Third-party (OIDC) provider
    oidc_discovery_url: Optional[str]
    oidc_client_id: Optional[str]
    oidc_client_secret: Optional[str]
    oidc_callback_url: Optional[str]  # Explicit redirect URI (default: <base>/api/auth/callback/oidc)
    oidc_provider_key: str  # Stored on user records as the provider tag
    oidc_provider_name: Optional[str]  # Display name (default: auto-detected)
    oidc_provider_logo: Optional[str]  # Logo URL (default: auto-detected)

    # Session configuration
    public_base_url: Optional[str]
    session_secret: Optional[str]  # Required for session signing
    session_ttl_seconds: int
    cookie_secure: bool

    # Local auth configuration
    signup_enabled: bool
    bcrypt_rounds: int
    login_max_attempts: int
    login_window_seconds: int

    @property
    def oidc_enabled(self) -> bool:
        """OIDC is enabled if discovery URL and credentials are configured."""
        return bool(self.oidc_discovery_url and self.oidc_client_id and self.oidc_client_secret)

    @property
    def local_enabled(self) -> bool:
        """Local username/password login is always available."""
        return True

    def callback_url(self) -> Optional[str]:
        if self.oidc_callback_url:
            return self.oidc_callback_url
        base = (self.public_base_url or "").strip().rstrip("/")
        if not base:
            return None
        return f"{base}{OIDC_CALLBACK_PATH}"


def env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if raw in ("1", "true", "yes", "y", "on"):
        return True
    if raw in ("0", "false", "no", "n", "off"):
        return False
    return default


def env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    OIDC is enabled if OIDC_DISCOVERY_URL, OIDC_CLIENT_ID, and OIDC_CLIENT_SECRET are set.
    Local signup/login is always available; signup can be switched off with AUTH_SIGNUP_ENABLED=0.
    """
    public_base_url = env_str("AUTH_PUBLIC_BASE_URL")
    # Default: secure cookies when base URL is https; otherwise allow local dev.
    cookie_secure = env_bool("AUTH_COOKIE_SECURE", (public_base_url or "").startswith("https://"))

    ttl = env_int("AUTH_SESSION_TTL_SECONDS", 43200)  # 12h default
    if ttl <= 60:
        ttl = 60

    # bcrypt accepts 4..31; anything above 16 makes a login take seconds.
    rounds = min(max(env_int("AUTH_BCRYPT_ROUNDS", 12), 4), 16)

    return AuthConfig(
        oidc_discovery_url=env_str("OIDC_DISCOVERY_URL"),
        oidc_client_id=env_str("OIDC_CLIENT_ID"),
        oidc_client_secret=env_str("OIDC_CLIENT_SECRET"),
        oidc_callback_url=env_str("OIDC_CALLBACK_URL"),
        oidc_provider_key=(env_str("OIDC_PROVIDER_KEY") or "oidc").lower(),
        oidc_provider_name=env_str("OIDC_PROVIDER_NAME"),
        oidc_provider_logo=env_str("OIDC_PROVIDER_LOGO"),
        public_base_url=public_base_url,
        session_secret=env_str("AUTH_SESSION_SECRET"),
        session_ttl_seconds=ttl,
        cookie_secure=cookie_secure,
        signup_enabled=env_bool("AUTH_SIGNUP_ENABLED", True),
        bcrypt_rounds=rounds,
        login_max_attempts=max(env_int("AUTH_LOGIN_MAX_ATTEMPTS", 5), 1),
        login_window_seconds=max(env_int("AUTH_LOGIN_WINDOW_SECONDS", 300), 1),
    )
