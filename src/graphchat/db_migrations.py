"""
Versioned schema setup for the SQLite stores.

Each store (chunk registry, memory store, conversation store) is a separate
component in the shared ``schema_migrations`` table, so stores that share one
database file evolve their schemas independently.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from .observability import get_logger

logger = get_logger(__name__)

_CREATE_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    component TEXT NOT NULL,
    version INTEGER NOT NULL,
    name TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    PRIMARY KEY(component, version)
)
"""


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()


def _applied_at() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _ordered(component: str, migrations: Sequence[SqliteMigration]) -> list[SqliteMigration]:
    ordered = sorted(migrations, key=lambda migration: int(migration.version))
    versions = [int(migration.version) for migration in ordered]
    if len(set(versions)) != len(versions):
        raise ValueError(f"duplicate migration versions for {component}: {versions}")
    if versions and versions[0] < 1:
        raise ValueError(f"migration versions for {component} must start at 1")
    return ordered


def applied_versions(conn: sqlite3.Connection, component: str) -> list[int]:
    conn.execute(_CREATE_VERSION_TABLE)
    rows = conn.execute(
        "SELECT version FROM schema_migrations WHERE component = ? ORDER BY version",
        (component,),
    ).fetchall()
    return [int(row[0]) for row in rows]


def schema_version(conn: sqlite3.Connection, component: str) -> int:
    """Highest applied version for ``component``; 0 for a fresh database."""
    versions = applied_versions(conn, component)
    return versions[-1] if versions else 0


def pending_migrations(
    conn: sqlite3.Connection, component: str, migrations: Sequence[SqliteMigration]
) -> list[SqliteMigration]:
    done = set(applied_versions(conn, component))
    return [migration for migration in _ordered(component, migrations) if int(migration.version) not in done]


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: Sequence[SqliteMigration],
) -> list[int]:
    """
    Runs the not-yet-applied migrations of ``component`` in version order and
    returns the versions applied by this call. The caller owns the transaction.
    """
    applied = []
    for migration in pending_migrations(conn, component, migrations):
        version = int(migration.version)
        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        conn.execute(
            "INSERT INTO schema_migrations (component, version, name, applied_at) VALUES (?, ?, ?, ?)",
            (component, version, migration.name, _applied_at()),
        )
        applied.append(version)
        logger.info("db_migration_applied", component=component, version=version, name=migration.name)
    return applied
