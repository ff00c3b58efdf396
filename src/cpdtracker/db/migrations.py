"""
Versioned schema migrations for the local store.

The applied version is kept in SQLite's PRAGMA user_version. Each migration
declares the columns and indexes it introduces plus an optional upgrade
callback that back-fills existing rows. Pending migrations run once each, in
increasing version order, from open_engine() after create_all().

Every step is idempotent: columns and indexes are only added if absent and
back-fills only touch rows whose new field is still NULL, so re-running a
version (e.g. after a crash between the upgrade and the version bump) is safe.

Version history:
  1  assets + subscriptions (baseline, created by create_all)
  2  power / recurring-cost fields, parent_id + is_composite hierarchy
  3  sync bookkeeping: remote_id, synced, last_synced_at
  4  role-based hierarchy replacing parent_id / is_composite
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from sqlalchemy import text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    columns: Tuple[Tuple[str, str, str], ...] = ()  # (table, column, SQLite type)
    indexes: Tuple[Tuple[str, str], ...] = ()  # (table, column)
    upgrade: Optional[Callable] = field(default=None, compare=False)


def _backfill_hardware_fields(conn) -> None:
    for column in ("power_watts", "daily_usage_hours", "recurring_maintenance_cost"):
        conn.execute(text(f"UPDATE asset SET {column} = 0 WHERE {column} IS NULL"))
    conn.execute(text("UPDATE asset SET is_composite = 0 WHERE is_composite IS NULL"))


def _backfill_sync_fields(conn) -> None:
    # Records that predate sync have never been uploaded.
    for table in ("asset", "subscription"):
        conn.execute(text(f"UPDATE {table} SET synced = 0 WHERE synced IS NULL"))


def _backfill_roles(conn) -> None:
    """Infer role/system_id from the deprecated is_composite/parent_id pair."""
    conn.execute(text(
        """
        UPDATE asset SET
            role = CASE
                WHEN is_composite = 1 THEN 'System'
                WHEN parent_id IS NOT NULL AND parent_id != '' THEN 'Component'
                ELSE 'Standalone'
            END,
            system_id = CASE
                WHEN is_composite = 1 THEN NULL
                WHEN parent_id = '' THEN NULL
                ELSE parent_id
            END
        WHERE role IS NULL
        """
    ))


MIGRATIONS: List[Migration] = [
    Migration(
        version=2,
        description="hardware running costs and parent/child hierarchy",
        columns=(
            ("asset", "parent_id", "TEXT"),
            ("asset", "is_composite", "BOOLEAN DEFAULT 0"),
            ("asset", "power_watts", "REAL DEFAULT 0"),
            ("asset", "daily_usage_hours", "REAL DEFAULT 0"),
            ("asset", "recurring_maintenance_cost", "REAL DEFAULT 0"),
        ),
        # v1 databases created outside create_all may lack the query indexes
        indexes=(
            ("asset", "category"),
            ("asset", "purchase_date"),
            ("asset", "status"),
            ("subscription", "category"),
            ("subscription", "start_date"),
            ("subscription", "status"),
        ),
        upgrade=_backfill_hardware_fields,
    ),
    Migration(
        version=3,
        description="sync bookkeeping",
        columns=(
            ("asset", "remote_id", "VARCHAR"),
            ("asset", "synced", "BOOLEAN DEFAULT 0"),
            ("asset", "last_synced_at", "DATETIME"),
            ("subscription", "remote_id", "VARCHAR"),
            ("subscription", "synced", "BOOLEAN DEFAULT 0"),
            ("subscription", "last_synced_at", "DATETIME"),
        ),
        indexes=(
            ("asset", "remote_id"),
            ("asset", "synced"),
            ("subscription", "remote_id"),
            ("subscription", "synced"),
        ),
        upgrade=_backfill_sync_fields,
    ),
    Migration(
        version=4,
        description="role-based asset hierarchy",
        columns=(
            ("asset", "role", "VARCHAR"),
            ("asset", "system_id", "VARCHAR"),
            ("asset", "linked_asset_id", "VARCHAR"),
        ),
        indexes=(
            ("asset", "role"),
            ("asset", "system_id"),
        ),
        upgrade=_backfill_roles,
    ),
]

SCHEMA_VERSION = MIGRATIONS[-1].version


def current_version(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(text("PRAGMA user_version")).scalar() or 0


def run_migrations(engine, migrations: Optional[List[Migration]] = None) -> int:
    """Apply all pending schema migrations.

    Safe to call multiple times; already-applied versions are skipped.
    Supports SQLite only (uses PRAGMA table_info / user_version).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
        migrations: Override the migration list (tests).

    Returns:
        The schema version after migrating.
    """
    migrations = sorted(migrations or MIGRATIONS, key=lambda m: m.version)
    with engine.connect() as conn:
        version = conn.execute(text("PRAGMA user_version")).scalar() or 0
        for migration in migrations:
            if migration.version <= version:
                continue
            logger.info(
                "Migrating local store to v%d (%s)",
                migration.version,
                migration.description,
            )
            for table, column, col_type in migration.columns:
                _add_column_if_missing(conn, table, column, col_type)
            for table, column in migration.indexes:
                conn.execute(text(
                    f"CREATE INDEX IF NOT EXISTS ix_{table}_{column} ON {table} ({column})"
                ))
            if migration.upgrade is not None:
                migration.upgrade(conn)
            # PRAGMA does not accept bound parameters
            conn.execute(text(f"PRAGMA user_version = {int(migration.version)}"))
            version = migration.version
        conn.commit()
    return version


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "REAL DEFAULT 0".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
