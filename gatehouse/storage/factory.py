"""
User store factory.

Picks the store implementation from StoreConfig.backend (USER_STORE env var):
- "memory": InMemoryUserStore (development, tests). Default.
- "postgres": PostgresUserStore (requires POSTGRES_DSN or POSTGRES_HOST/DB/USER/PASSWORD)
"""

from __future__ import annotations

from typing import Optional

from gatehouse.storage.base import UserStore
from gatehouse.storage.config import STORE_BACKENDS, StoreConfig, load_store_config


def create_user_store(cfg: Optional[StoreConfig] = None) -> UserStore:
    cfg = cfg or load_store_config()
    if cfg.backend not in STORE_BACKENDS:
        raise ValueError(f"Invalid USER_STORE value: {cfg.backend!r}. Expected one of: {', '.join(STORE_BACKENDS)}")

    if cfg.uses_postgres:
        dsn = cfg.postgres.conninfo()
        if not dsn:
            raise ValueError("USER_STORE=postgres requires POSTGRES_DSN or POSTGRES_HOST/DB/USER/PASSWORD")
        from gatehouse.storage.postgres_store import PostgresUserStore

        return PostgresUserStore(dsn)

    from gatehouse.storage.memory_store import InMemoryUserStore

    return InMemoryUserStore()
