"""Schema migrations for the quota store, tracked in the schema_version table."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

logger = logging.getLogger(__name__)

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"

# Drop order: children before parents.
QUOTA_TABLES = ("respondents", "quota_buckets", "quota_dimensions", "quota_configs", "schema_version")


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: Sequence[str]


def _get_migrations() -> List[Migration]:
    return [
        Migration(
            1,
            "Initial schema: quota_configs, quota_dimensions, quota_buckets, respondents",
            [SCHEMA_SQL_PATH.read_text(encoding="utf-8")],
        ),
        Migration(
            2,
            "Index respondents by vendor respondent id for caller-side dedup",
            [
                "CREATE INDEX IF NOT EXISTS idx_respondents_vendor "
                "ON respondents(quota_id, vendor_respondent_id);",
            ],
        ),
    ]


def get_current_version(conn: sqlite3.Connection) -> int:
    """Highest applied version; 0 for an empty database."""
    try:
        (version,) = conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        return 0
    return version


def _apply(conn: sqlite3.Connection, migration: Migration) -> None:
    logger.info("Applying migration v%d: %s", migration.version, migration.description)
    try:
        for script in migration.statements:
            conn.executescript(script)
        conn.execute(
            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
            (migration.version, migration.description),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        logger.exception("Migration v%d failed", migration.version)
        raise


def apply_migrations(db_path: str) -> int:
    """Bring the database at ``db_path`` up to date. Returns the schema version."""
    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")

        start = get_current_version(conn)
        pending = [m for m in _get_migrations() if m.version > start]
        for migration in pending:
            _apply(conn, migration)
        final = get_current_version(conn)

    if pending:
        logger.info("Schema migrated v%d -> v%d", start, final)
    else:
        logger.debug("Schema up to date at v%d", final)
    return final


def reset_database(db_path: str) -> None:
    """Drop every quota table and rebuild the schema. Destroys all data."""
    with closing(sqlite3.connect(db_path)) as conn:
        for name in QUOTA_TABLES:
            conn.execute(f"DROP TABLE IF EXISTS [{name}]")
        conn.commit()
    apply_migrations(db_path)
