"""Async SQLite store for quota configuration, counters and respondents."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from surveyquota.errors import TransientStoreError
from surveyquota.storage.migrations import apply_migrations
from surveyquota.storage.models import (
    QuotaBucket,
    QuotaConfig,
    QuotaDimension,
    QuotaSnapshot,
    Respondent,
    RespondentStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5000
DEFAULT_PAGE_SIZE = 100

# Tally counters that have no ceiling.
TALLY_COUNTERS = frozenset({"qualified_count", "terminated_count", "quota_full_count"})

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


class QuotaStore:
    """Async SQLite store with WAL mode and serialized write transactions.

    Every mutation of counters or respondents runs inside ``transaction()``,
    which takes SQLite's write lock up front (``BEGIN IMMEDIATE``) so the
    read-decide-write sequence of an admission cannot interleave with another
    writer, in this process or any other.
    Plain reads (``get_*``, ``list_*``) share the connection and wait for an open
    transaction, so they never see uncommitted counters.

    Usage:
        store = QuotaStore("data/quota.db")
        await store.initialize()
        async with store.transaction() as conn:
            snapshot = await store.load_snapshot(conn, quota_id)
            ...
        await store.close()
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create database, apply migrations, and configure pragmas."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Apply migrations synchronously (schema changes)
        apply_migrations(self.db_path)

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")

        logger.info("Quota store initialized: %s", self.db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Acquire the write lock, begin an immediate transaction, commit or roll back."""
        assert self._conn is not None, "Store not initialized"
        async with self._lock:
            try:
                await self._conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self._conn
                    await self._conn.commit()
                except BaseException:
                    await self._conn.rollback()
                    raise
            except sqlite3.OperationalError as e:
                if _is_transient(e):
                    logger.warning("Transaction aborted by store: %s", e)
                    raise TransientStoreError(f"Store busy, retry the call: {e}") from e
                raise

    # --- Quota configuration ---

    async def save_quota(
        self,
        config: QuotaConfig,
        dimensions: Sequence[QuotaDimension],
        buckets: Sequence[QuotaBucket],
    ) -> QuotaConfig:
        """Create or replace a survey's quota configuration.

        Matches on ``survey_id``: an existing quota keeps its id and its
        counters, while its dimensions and buckets are replaced wholesale.
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT id FROM quota_configs WHERE survey_id = ?", (config.survey_id,)
            )
            row = await cursor.fetchone()
            if row:
                quota_id = row["id"]
                await conn.execute(
                    """UPDATE quota_configs
                       SET total_target = ?, is_active = ?, vendor_id = ?, country_code = ?,
                           language = ?, completed_url = ?, terminated_url = ?,
                           quota_full_url = ?, updated_at = ?
                       WHERE id = ?""",
                    (
                        config.total_target,
                        int(config.is_active),
                        config.vendor_id,
                        config.country_code,
                        config.language,
                        config.completed_url,
                        config.terminated_url,
                        config.quota_full_url,
                        utcnow().isoformat(),
                        quota_id,
                    ),
                )
                await conn.execute("DELETE FROM quota_buckets WHERE quota_id = ?", (quota_id,))
                await conn.execute("DELETE FROM quota_dimensions WHERE quota_id = ?", (quota_id,))
            else:
                quota_id = config.id
                await conn.execute(
                    """INSERT INTO quota_configs
                       (id, survey_id, total_target, current_count, qualified_count,
                        terminated_count, quota_full_count, is_active, vendor_id,
                        country_code, language, completed_url, terminated_url, quota_full_url)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    config.to_row(),
                )

            for dim in dimensions:
                dim.quota_id = quota_id
            for bucket in buckets:
                bucket.quota_id = quota_id

            await conn.executemany(
                """INSERT INTO quota_dimensions
                   (quota_id, dimension_key, position, question_key, vendor_question_id)
                   VALUES (?, ?, ?, ?, ?)""",
                [d.to_row() for d in dimensions],
            )
            await conn.executemany(
                """INSERT INTO quota_buckets
                   (id, quota_id, dimension_key, position, label, operator, operand,
                    target_count, target_percentage, current_count, is_active, vendor_option_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [b.to_row() for b in buckets],
            )

        logger.info(
            "Saved quota %s for survey %s: %d dimension(s), %d bucket(s)",
            quota_id, config.survey_id, len(dimensions), len(buckets),
        )
        saved = await self.get_quota(quota_id)
        assert saved is not None
        return saved

    async def get_quota(self, quota_id: str) -> Optional[QuotaConfig]:
        """Get a quota by ID."""
        row = await self._fetchone("SELECT * FROM quota_configs WHERE id = ?", (quota_id,))
        return QuotaConfig.from_row(dict(row)) if row else None

    async def get_quota_by_survey(self, survey_id: str) -> Optional[QuotaConfig]:
        """Get the quota configured for a survey."""
        row = await self._fetchone(
            "SELECT * FROM quota_configs WHERE survey_id = ?", (survey_id,)
        )
        return QuotaConfig.from_row(dict(row)) if row else None

    async def list_quotas(self) -> List[QuotaConfig]:
        """All quotas, newest first."""
        rows = await self._fetchall(
            "SELECT * FROM quota_configs ORDER BY created_at DESC, survey_id"
        )
        return [QuotaConfig.from_row(dict(r)) for r in rows]

    async def get_dimensions(self, quota_id: str) -> List[QuotaDimension]:
        """Dimensions of a quota in configuration order."""
        rows = await self._fetchall(
            "SELECT * FROM quota_dimensions WHERE quota_id = ? ORDER BY position, dimension_key",
            (quota_id,),
        )
        return [QuotaDimension.from_row(dict(r)) for r in rows]

    async def get_buckets(self, quota_id: str, active_only: bool = False) -> List[QuotaBucket]:
        """Buckets of a quota in configuration order."""
        async with self._reader() as conn:
            return await self._select_buckets(conn, quota_id, active_only)

    async def set_quota_active(self, quota_id: str, active: bool) -> bool:
        """Flip the master switch. Returns False if the quota does not exist."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE quota_configs SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(active), utcnow().isoformat(), quota_id),
            )
            return cursor.rowcount > 0

    async def set_bucket_active(self, bucket_id: str, active: bool) -> bool:
        """Open or close a single bucket. Returns False if it does not exist."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE quota_buckets SET is_active = ? WHERE id = ?",
                (int(active), bucket_id),
            )
            return cursor.rowcount > 0

    async def delete_quota(self, quota_id: str) -> bool:
        """Delete a quota with its dimensions, buckets and respondents."""
        async with self.transaction() as conn:
            cursor = await conn.execute("DELETE FROM quota_configs WHERE id = ?", (quota_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted quota %s", quota_id)
        return deleted

    # --- Respondents ---

    async def get_respondent(self, respondent_id: str) -> Optional[Respondent]:
        """Get a respondent by ID (outside any transaction)."""
        async with self._reader() as conn:
            return await self.fetch_respondent(conn, respondent_id)

    async def list_respondents(
        self,
        quota_id: str,
        status: Optional[RespondentStatus] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> List[Respondent]:
        """Respondents of a quota, newest first, optionally filtered by status."""
        if status:
            rows = await self._fetchall(
                """SELECT * FROM respondents WHERE quota_id = ? AND status = ?
                   ORDER BY created_at DESC LIMIT ? OFFSET ?""",
                (quota_id, status.value, limit, offset),
            )
        else:
            rows = await self._fetchall(
                """SELECT * FROM respondents WHERE quota_id = ?
                   ORDER BY created_at DESC LIMIT ? OFFSET ?""",
                (quota_id, limit, offset),
            )
        return [Respondent.from_row(dict(r)) for r in rows]

    async def count_respondents_by_status(self, quota_id: str) -> Dict[str, int]:
        """Respondent row counts per status for one quota."""
        rows = await self._fetchall(
            "SELECT status, COUNT(*) AS cnt FROM respondents WHERE quota_id = ? GROUP BY status",
            (quota_id,),
        )
        counts = {s.value: 0 for s in RespondentStatus}
        for r in rows:
            counts[r["status"]] = r["cnt"]
        return counts

    # --- Committed reads ---
    # The connection is shared with transaction(); reads wait for the open
    # transaction to finish so they only ever see committed rows.

    @asynccontextmanager
    async def _reader(self) -> AsyncIterator[aiosqlite.Connection]:
        assert self._conn is not None, "Store not initialized"
        async with self._lock:
            yield self._conn

    async def _fetchone(self, sql: str, params: Sequence = ()) -> Optional[aiosqlite.Row]:
        async with self._reader() as conn:
            cursor = await conn.execute(sql, params)
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Sequence = ()) -> List[aiosqlite.Row]:
        async with self._reader() as conn:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())

    # --- Transaction-scoped operations ---
    # These take the connection yielded by transaction() and never commit.

    async def load_snapshot(
        self, conn: aiosqlite.Connection, quota_id: str
    ) -> Optional[QuotaSnapshot]:
        """Read a quota and its active buckets in one consistent view."""
        cursor = await conn.execute("SELECT * FROM quota_configs WHERE id = ?", (quota_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        buckets = await self._select_buckets(conn, quota_id, active_only=True)
        return QuotaSnapshot(config=QuotaConfig.from_row(dict(row)), buckets=buckets)

    async def insert_respondent(self, conn: aiosqlite.Connection, respondent: Respondent) -> None:
        await conn.execute(
            """INSERT INTO respondents
               (id, quota_id, vendor_respondent_id, status, answers, matched_buckets,
                reason, external_response_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            respondent.to_row(),
        )

    async def fetch_respondent(
        self, conn: aiosqlite.Connection, respondent_id: str
    ) -> Optional[Respondent]:
        cursor = await conn.execute("SELECT * FROM respondents WHERE id = ?", (respondent_id,))
        row = await cursor.fetchone()
        return Respondent.from_row(dict(row)) if row else None

    async def transition_respondent(
        self,
        conn: aiosqlite.Connection,
        respondent_id: str,
        to_status: RespondentStatus,
        reason: Optional[str] = None,
        external_response_id: Optional[str] = None,
    ) -> bool:
        """Move a QUALIFIED respondent to a terminal status.

        Conditional on the row still being QUALIFIED; returns False when
        another call already moved it.
        """
        cursor = await conn.execute(
            """UPDATE respondents
               SET status = ?, reason = COALESCE(?, reason),
                   external_response_id = COALESCE(?, external_response_id), updated_at = ?
               WHERE id = ? AND status = ?""",
            (
                to_status.value,
                reason,
                external_response_id,
                utcnow().isoformat(),
                respondent_id,
                RespondentStatus.QUALIFIED.value,
            ),
        )
        return cursor.rowcount == 1

    async def increment_quota_counter(
        self, conn: aiosqlite.Connection, quota_id: str, counter: str
    ) -> None:
        """Add one to a tally counter (qualified/terminated/quota_full)."""
        if counter not in TALLY_COUNTERS:
            raise ValueError(f"Not a tally counter: {counter}")
        await conn.execute(
            f"UPDATE quota_configs SET {counter} = {counter} + 1, updated_at = ? WHERE id = ?",
            (utcnow().isoformat(), quota_id),
        )

    async def increment_current_with_ceiling(
        self, conn: aiosqlite.Connection, quota_id: str
    ) -> bool:
        """Add one to the quota's current_count unless it reached total_target."""
        cursor = await conn.execute(
            """UPDATE quota_configs SET current_count = current_count + 1, updated_at = ?
               WHERE id = ? AND current_count < total_target""",
            (utcnow().isoformat(), quota_id),
        )
        return cursor.rowcount == 1

    async def increment_bucket_with_ceiling(
        self, conn: aiosqlite.Connection, bucket_id: str, ceiling: int
    ) -> bool:
        """Add one to a bucket's current_count unless it reached ``ceiling``."""
        cursor = await conn.execute(
            """UPDATE quota_buckets SET current_count = current_count + 1
               WHERE id = ? AND current_count < ?""",
            (bucket_id, ceiling),
        )
        return cursor.rowcount == 1

    async def fetch_bucket(self, conn: aiosqlite.Connection, bucket_id: str) -> Optional[QuotaBucket]:
        cursor = await conn.execute("SELECT * FROM quota_buckets WHERE id = ?", (bucket_id,))
        row = await cursor.fetchone()
        return QuotaBucket.from_row(dict(row)) if row else None

    async def _select_buckets(
        self, conn: aiosqlite.Connection, quota_id: str, active_only: bool
    ) -> List[QuotaBucket]:
        sql = "SELECT * FROM quota_buckets WHERE quota_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY position, id"
        cursor = await conn.execute(sql, (quota_id,))
        rows = await cursor.fetchall()
        return [QuotaBucket.from_row(dict(r)) for r in rows]

    # --- Maintenance ---

    async def integrity_check(self) -> bool:
        """Run integrity check on the database."""
        row = await self._fetchone("PRAGMA integrity_check")
        return row is not None and row[0] == "ok"


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)
