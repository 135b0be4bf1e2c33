"""
Pytest config.

Local imports like `import gatehouse` rely on the repo root being on sys.path. When a
global `pytest` entrypoint is used without installing the project, that doesn't happen
reliably during collection, so we pin it here.
"""

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from gatehouse.auth.config import AuthConfig, load_auth_config  # noqa: E402
from gatehouse.auth.coordinator import AuthCoordinator  # noqa: E402
from gatehouse.storage.memory_store import InMemoryUserStore  # noqa: E402

TEST_SESSION_SECRET = "test-secret-key-for-testing-purposes-only"


@pytest.fixture(autouse=True)
def _isolated_auth_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test from a clean auth environment (no OIDC, fast bcrypt)."""
    for name in (
        "OIDC_DISCOVERY_URL",
        "OIDC_CLIENT_ID",
        "OIDC_CLIENT_SECRET",
        "OIDC_CALLBACK_URL",
        "OIDC_PROVIDER_KEY",
        "AUTH_PUBLIC_BASE_URL",
        "AUTH_COOKIE_SECURE",
        "AUTH_SIGNUP_ENABLED",
        "USER_STORE",
        "DB_AUTO_MIGRATE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AUTH_SESSION_SECRET", TEST_SESSION_SECRET)
    monkeypatch.setenv("AUTH_BCRYPT_ROUNDS", "4")
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


@pytest.fixture
def auth_config() -> AuthConfig:
    return load_auth_config()


@pytest.fixture
def oidc_config(auth_config: AuthConfig) -> AuthConfig:
    return replace(
        auth_config,
        oidc_discovery_url="https://accounts.example.com/.well-known/openid-configuration",
        oidc_client_id="test-client-id",
        oidc_client_secret="test-client-secret",
        public_base_url="http://testserver",
    )


@pytest.fixture
def store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def coordinator(store: InMemoryUserStore, auth_config: AuthConfig) -> AuthCoordinator:
    return AuthCoordinator(store, auth_config)
