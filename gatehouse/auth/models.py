from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from gatehouse.auth.local import DEFAULT_ROUNDS, hash_password, verify_password


def new_user_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LocalCredentials:
    """Username/password sub-record. Usernames are unique only within this namespace."""

    username: str
    password_hash: str


@dataclass
class ProviderCredentials:
    """Third-party (OIDC) sub-record."""

    provider: str  # provider tag, e.g. "oidc" or "google"
    provider_id: str  # subject identifier issued by the provider
    token: str  # access token captured at first login (never refreshed)
    display_name: Optional[str] = None
    username: Optional[str] = None


@dataclass
class User:
    """A user record. Either or both credential sub-records may be set."""

    id: str = field(default_factory=new_user_id)
    local: Optional[LocalCredentials] = None
    third_party: Optional[ProviderCredentials] = None
    created_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def generate_hash(password: str, rounds: int = DEFAULT_ROUNDS) -> str:
        return hash_password(password, rounds=rounds)

    def valid_password(self, password: str) -> bool:
        if self.local is None:
            return False
        return verify_password(password, self.local.password_hash)

    @property
    def provider(self) -> str:
        if self.local is not None:
            return "local"
        if self.third_party is not None:
            return self.third_party.provider
        return "unknown"

    @property
    def username(self) -> Optional[str]:
        if self.local is not None:
            return self.local.username
        if self.third_party is not None:
            return self.third_party.username
        return None

    @property
    def display_name(self) -> Optional[str]:
        if self.third_party is not None and self.third_party.display_name:
            return self.third_party.display_name
        return self.username
