"""
Schema migrations for the Postgres user store.

Migrations are the ordered `NNNN_name.sql` files next to this module. Each runs once,
in its own transaction, and is recorded with its checksum in `schema_migrations`;
a file edited after it was applied stops the run. Runs hold an advisory lock so
replicas starting together take turns. Afterwards the `users` table is checked for
every column PostgresUserStore reads and writes.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import psycopg

from gatehouse.storage.config import StoreConfig, load_store_config
from gatehouse.storage.postgres_store import USER_COLUMNS

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Advisory lock id shared by every gatehouse replica (bigint).
MIGRATION_LOCK_KEY = 604113287562

_HISTORY_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version text PRIMARY KEY,
  checksum text NOT NULL,
  applied_at timestamptz NOT NULL DEFAULT now()
)
"""

_RECORD_SQL = "INSERT INTO schema_migrations (version, checksum) VALUES (%s, %s)"

_USER_COLUMNS_SQL = (
    "SELECT column_name FROM information_schema.columns "
    "WHERE table_schema = current_schema() AND table_name = 'users'"
)


class MigrationError(RuntimeError):
    """Recorded history disagrees with the files, or the users table lacks store columns."""


@dataclass(frozen=True)
class Migration:
    version: str
    sql: str
    checksum: str

    @classmethod
    def from_file(cls, path: Path) -> "Migration":
        raw = path.read_bytes()
        return cls(version=path.stem, sql=raw.decode("utf-8"), checksum=hashlib.sha256(raw).hexdigest())


@dataclass
class MigrationReport:
    applied: List[str] = field(default_factory=list)
    already_applied: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.applied:
            return f"Applied {len(self.applied)} migration(s): {', '.join(self.applied)}"
        return f"No pending migrations ({len(self.already_applied)} already applied)"


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    return [Migration.from_file(p) for p in sorted(directory.glob("*.sql"))]


def _recorded_checksums(conn) -> Dict[str, str]:
    conn.execute(_HISTORY_DDL)
    rows = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
    return {str(version): str(checksum) for version, checksum in rows}


def _missing_user_columns(conn) -> List[str]:
    present = {str(row[0]) for row in conn.execute(_USER_COLUMNS_SQL).fetchall()}
    return [c for c in USER_COLUMNS if c not in present]


def migrate_user_store(dsn: str, migrations: Optional[Sequence[Migration]] = None) -> MigrationReport:
    """
    Bring the user store schema up to date.

    Raises MigrationError for an edited migration or an incomplete users table, and
    lets psycopg.Error through for connection and SQL failures.
    """
    todo = list(migrations) if migrations is not None else load_migrations()
    report = MigrationReport()

    with psycopg.connect(dsn, autocommit=True) as conn:
        conn.execute("SELECT pg_advisory_lock(%s)", (MIGRATION_LOCK_KEY,))
        try:
            recorded = _recorded_checksums(conn)
            for m in todo:
                checksum = recorded.get(m.version)
                if checksum == m.checksum:
                    report.already_applied.append(m.version)
                    continue
                if checksum is not None:
                    raise MigrationError(
                        f"Migration {m.version} changed after it was applied: db={checksum[:12]} file={m.checksum[:12]}"
                    )
                with conn.transaction():
                    conn.execute(m.sql)
                    conn.execute(_RECORD_SQL, (m.version, m.checksum))
                logger.info("Applied user store migration %s", m.version)
                report.applied.append(m.version)
            missing = _missing_user_columns(conn)
        finally:
            conn.execute("SELECT pg_advisory_unlock(%s)", (MIGRATION_LOCK_KEY,))

    if missing:
        raise MigrationError(f"users table is missing columns: {', '.join(missing)}")
    return report


def maybe_auto_migrate(cfg: Optional[StoreConfig] = None) -> Tuple[bool, str]:
    """
    Startup hook: migrate when the Postgres store is selected and DB_AUTO_MIGRATE=1.

    Returns (did_attempt, message). Failures are reported, never raised.
    """
    cfg = cfg or load_store_config()
    if not cfg.uses_postgres:
        return False, f"User store is {cfg.backend!r}; nothing to migrate"
    if not cfg.auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    dsn = cfg.postgres.conninfo()
    if not dsn:
        return False, "Postgres DSN not configured"
    try:
        report = migrate_user_store(dsn)
    except (psycopg.Error, MigrationError) as e:
        return True, f"Migration of {cfg.postgres.target()} failed: {e}"
    return True, report.summary()
