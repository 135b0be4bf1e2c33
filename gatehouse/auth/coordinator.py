"""
Authentication outcome coordinator.

One object per application, built with the user store and auth config it should
use. Each attempt is a single linear pass over the store (lookup, then at most one
save) and resolves to exactly one Outcome. Store failures become
InfrastructureError; user mistakes become Rejected and are never raised.

Lookup-then-save is not serialized across concurrent attempts: two signups for the
same fresh username can both see "no match". Only a store-level uniqueness
constraint (the Postgres schema has one) turns the second save into an error.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from gatehouse.auth.config import AuthConfig
from gatehouse.auth.models import LocalCredentials, ProviderCredentials, User
from gatehouse.auth.outcome import (
    PASSWORD_INCORRECT,
    USERNAME_NOT_FOUND,
    USERNAME_TAKEN,
    InfrastructureError,
    Outcome,
    Rejected,
    Success,
)
from gatehouse.storage.base import StoreError, UserStore

logger = logging.getLogger(__name__)


class AuthCoordinator:
    def __init__(self, store: UserStore, cfg: AuthConfig) -> None:
        self.store = store
        self.cfg = cfg

    async def signup(self, username: str, password: str) -> Outcome:
        """Create a local user unless the username is already taken."""
        try:
            existing = await self.store.find_one({"local.username": username})
        except StoreError as e:
            logger.warning("Signup lookup failed for %s: %s", username, str(e))
            return InfrastructureError(e)
        if existing is not None:
            logger.info("Signup rejected: username %s is taken", username)
            return Rejected(USERNAME_TAKEN)

        # bcrypt is CPU-bound; keep it off the event loop.
        password_hash = await asyncio.to_thread(User.generate_hash, password, self.cfg.bcrypt_rounds)
        user = User(local=LocalCredentials(username=username, password_hash=password_hash))
        try:
            await self.store.save(user)
        except StoreError as e:
            logger.warning("Signup save failed for %s: %s", username, str(e))
            return InfrastructureError(e)

        logger.info("Signup succeeded: username=%s user_id=%s", username, user.id)
        return Success(user)

    async def login(self, username: str, password: str) -> Outcome:
        """Check a username/password pair. Never writes to the store."""
        try:
            user = await self.store.find_one({"local.username": username})
        except StoreError as e:
            logger.warning("Login lookup failed for %s: %s", username, str(e))
            return InfrastructureError(e)
        if user is None:
            logger.info("Login rejected: username %s not found", username)
            return Rejected(USERNAME_NOT_FOUND)

        if not await asyncio.to_thread(user.valid_password, password):
            logger.info("Login rejected: wrong password for %s", username)
            return Rejected(PASSWORD_INCORRECT)

        logger.info("Login succeeded: username=%s user_id=%s", username, user.id)
        return Success(user)

    async def third_party_login(
        self,
        provider_id: str,
        token: str,
        display_name: Optional[str],
        *,
        username: Optional[str] = None,
    ) -> Outcome:
        """
        Log in with a provider identity, creating the user on first sight.

        An existing user is returned as stored; the token is not refreshed.
        """
        provider = self.cfg.oidc_provider_key
        try:
            existing = await self.store.find_one(
                {"third_party.provider": provider, "third_party.provider_id": provider_id}
            )
        except StoreError as e:
            logger.warning("Third-party lookup failed (provider=%s): %s", provider, str(e))
            return InfrastructureError(e)
        if existing is not None:
            return Success(existing)

        user = User(
            third_party=ProviderCredentials(
                provider=provider,
                provider_id=provider_id,
                token=token,
                display_name=display_name,
                username=username,
            )
        )
        try:
            await self.store.save(user)
        except StoreError as e:
            logger.warning("Third-party user save failed (provider=%s): %s", provider, str(e))
            return InfrastructureError(e)

        logger.info("Created user %s from %s login", user.id, provider)
        return Success(user)

    def serialize_session(self, user: User) -> str:
        return user.id

    async def deserialize_session(self, token: str) -> Optional[User]:
        """Look the session's user up by id. StoreError propagates to the caller."""
        return await self.store.find_by_id(token)
