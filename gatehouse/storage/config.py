"""
Which user store to run, and how to reach Postgres.

USER_STORE selects the backend ("memory" by default, or "postgres"). The Postgres
store connects with POSTGRES_DSN when set, otherwise with a conninfo assembled from
POSTGRES_HOST/PORT/DB/USER/PASSWORD.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import psycopg
from psycopg.conninfo import conninfo_to_dict, make_conninfo

from gatehouse.auth.config import env_bool, env_int, env_str

STORE_BACKENDS = ("memory", "postgres")


@dataclass(frozen=True)
class PostgresSettings:
    dsn: Optional[str] = None
    host: Optional[str] = None
    port: int = 5432
    dbname: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None

    def conninfo(self) -> Optional[str]:
        """Connection string for psycopg, or None when neither a DSN nor every part is set."""
        if self.dsn:
            return self.dsn
        if not (self.host and self.dbname and self.user and self.password):
            return None
        # make_conninfo quotes spaces and quotes in the password.
        return make_conninfo(host=self.host, port=self.port, dbname=self.dbname, user=self.user, password=self.password)

    def target(self) -> str:
        """`host/dbname` for logs; never includes credentials."""
        if self.dsn:
            try:
                parts = conninfo_to_dict(self.dsn)
            except psycopg.ProgrammingError:
                return "<unparseable POSTGRES_DSN>"
        else:
            parts = {"host": self.host, "dbname": self.dbname}
        return f"{parts.get('host') or 'localhost'}/{parts.get('dbname') or '?'}"


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "memory"
    auto_migrate: bool = False  # apply migrations on service startup (postgres only)
    postgres: PostgresSettings = field(default_factory=PostgresSettings)

    @property
    def uses_postgres(self) -> bool:
        return self.backend == "postgres"


def load_store_config() -> StoreConfig:
    return StoreConfig(
        backend=(env_str("USER_STORE") or "memory").lower(),
        auto_migrate=env_bool("DB_AUTO_MIGRATE", False),
        postgres=PostgresSettings(
            dsn=env_str("POSTGRES_DSN"),
            host=env_str("POSTGRES_HOST"),
            port=env_int("POSTGRES_PORT", 5432),
            dbname=env_str("POSTGRES_DB"),
            user=env_str("POSTGRES_USER"),
            password=env_str("POSTGRES_PASSWORD"),
        ),
    )
