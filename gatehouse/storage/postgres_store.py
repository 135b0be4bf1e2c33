"""Postgres-backed user store (psycopg 3, async)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg

from gatehouse.auth.models import LocalCredentials, ProviderCredentials, User
from gatehouse.storage.base import StoreError, check_criteria

logger = logging.getLogger(__name__)

# Columns read and written by the store; migrate_user_store() checks the table has them.
USER_COLUMNS = (
    "id",
    "local_username",
    "local_password_hash",
    "provider",
    "provider_id",
    "provider_token",
    "provider_display_name",
    "provider_username",
    "created_at",
)

_CRITERIA_COLUMNS = {
    "id": "id",
    "local.username": "local_username",
    "third_party.provider": "provider",
    "third_party.provider_id": "provider_id",
}

_SELECT = f"SELECT {', '.join(USER_COLUMNS)} FROM users"

_UPSERT = f"""
    INSERT INTO users ({', '.join(USER_COLUMNS)})
    VALUES ({', '.join(['%s'] * len(USER_COLUMNS))})
    ON CONFLICT (id) DO UPDATE SET
      {', '.join(f'{c} = EXCLUDED.{c}' for c in USER_COLUMNS if c not in ('id', 'created_at'))}
"""


def _where_clause(criteria: Dict[str, Any]) -> Tuple[str, List[Any]]:
    check_criteria(criteria)
    conditions: List[str] = []
    params: List[Any] = []
    for path in sorted(criteria):
        conditions.append(f"{_CRITERIA_COLUMNS[path]} = %s")
        params.append(criteria[path])
    return " AND ".join(conditions), params


def _row_to_user(row: Sequence[Any]) -> User:
    (
        user_id,
        local_username,
        local_password_hash,
        provider,
        provider_id,
        provider_token,
        provider_display_name,
        provider_username,
        created_at,
    ) = row
    local = None
    if local_username is not None:
        local = LocalCredentials(username=local_username, password_hash=local_password_hash or "")
    third_party = None
    if provider_id is not None:
        third_party = ProviderCredentials(
            provider=provider,
            provider_id=provider_id,
            token=provider_token or "",
            display_name=provider_display_name,
            username=provider_username,
        )
    return User(id=user_id, local=local, third_party=third_party, created_at=created_at)


def _user_to_params(user: User) -> Tuple[Any, ...]:
    local = user.local
    tp = user.third_party
    return (
        user.id,
        local.username if local else None,
        local.password_hash if local else None,
        tp.provider if tp else None,
        tp.provider_id if tp else None,
        tp.token if tp else None,
        tp.display_name if tp else None,
        tp.username if tp else None,
        user.created_at,
    )


class PostgresUserStore:
    """
    UserStore over the `users` table (see migrations/0001_users.sql).

    Opens one connection per call. Driver errors are wrapped in StoreError; unique
    index violations on save (concurrent duplicate signup) surface the same way.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    async def _connect(self) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(self._dsn)

    async def _fetch_one(self, sql: str, params: Sequence[Any]) -> Optional[User]:
        try:
            async with await self._connect() as conn:
                cur = await conn.execute(sql, params)
                row = await cur.fetchone()
        except psycopg.Error as e:
            logger.warning("User lookup failed: %s", str(e))
            raise StoreError("User lookup failed") from e
        return _row_to_user(row) if row else None

    async def find_one(self, criteria: Dict[str, Any]) -> Optional[User]:
        where, params = _where_clause(criteria)
        return await self._fetch_one(f"{_SELECT} WHERE {where} LIMIT 1", params)

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await self._fetch_one(f"{_SELECT} WHERE id = %s", (user_id,))

    async def save(self, user: User) -> None:
        try:
            # The connection context commits on clean exit.
            async with await self._connect() as conn:
                await conn.execute(_UPSERT, _user_to_params(user))
        except psycopg.Error as e:
            logger.warning("User save failed (id=%s): %s", user.id, str(e))
            raise StoreError("User save failed") from e
