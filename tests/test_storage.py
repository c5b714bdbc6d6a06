"""Tests for the storage layer: schema, quota store, models, migrations."""

from __future__ import annotations

import asyncio
import sqlite3

import pytest

from surveyquota.errors import ConfigurationError, TransientStoreError
from surveyquota.storage.db import QuotaStore, _is_transient
from surveyquota.storage.migrations import apply_migrations, get_current_version, reset_database
from surveyquota.storage.models import (
    Answer,
    CategoricalRule,
    GeoRule,
    MatchedBucket,
    Operator,
    QuotaBucket,
    QuotaConfig,
    QuotaDimension,
    RangeRule,
    Respondent,
    RespondentStatus,
    SetRule,
    UnknownRule,
    parse_rule,
    stringify,
)


# --- Fixtures ---

@pytest.fixture
def tmp_db(tmp_path):
    """Return a path to a temporary database file."""
    return str(tmp_path / "test.db")


@pytest.fixture
async def store(tmp_db):
    """Return an initialized QuotaStore."""
    s = QuotaStore(tmp_db)
    await s.initialize()
    yield s
    await s.close()


def make_config(survey_id: str = "survey-1", total_target: int = 10, **kwargs) -> QuotaConfig:
    return QuotaConfig(id=f"q-{survey_id}", survey_id=survey_id, total_target=total_target, **kwargs)


def make_bucket(
    bucket_id: str,
    quota_id: str = "q-survey-1",
    dimension_key: str = "AGE",
    rule=None,
    target_count: int = 5,
    position: int = 0,
) -> QuotaBucket:
    return QuotaBucket(
        id=bucket_id,
        quota_id=quota_id,
        dimension_key=dimension_key,
        rule=rule or RangeRule(operator=Operator.BETWEEN, minimum=18, maximum=25),
        position=position,
        label=bucket_id,
        target_count=target_count,
    )


async def seed(store: QuotaStore, total_target: int = 10, bucket_target: int = 5) -> QuotaConfig:
    config = make_config(total_target=total_target)
    dims = [QuotaDimension(quota_id=config.id, dimension_key="AGE")]
    buckets = [
        make_bucket("b-young", target_count=bucket_target),
        make_bucket(
            "b-old",
            rule=RangeRule(operator=Operator.GTE, minimum=26),
            target_count=bucket_target,
            position=1,
        ),
    ]
    return await store.save_quota(config, dims, buckets)


def make_respondent(quota_id: str, respondent_id: str = "r-1", status=RespondentStatus.QUALIFIED) -> Respondent:
    return Respondent(
        id=respondent_id,
        quota_id=quota_id,
        vendor_respondent_id="vendor-1_BR_x",
        status=status,
        answers=[Answer(dimension_key="AGE", value=20)],
        matched_buckets=[MatchedBucket(dimension_key="AGE", bucket_id="b-young", label="b-young")],
        reason="QUALIFIED",
    )


# --- Schema & Migration Tests ---

class TestMigrations:
    def test_apply_migrations_creates_tables(self, tmp_db):
        version = apply_migrations(tmp_db)
        assert version == 2

        conn = sqlite3.connect(tmp_db)
        tables = {
            r[0]
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        indexes = {
            r[0]
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()
        }
        conn.close()

        assert {"quota_configs", "quota_dimensions", "quota_buckets", "respondents", "schema_version"} <= tables
        assert "idx_respondents_vendor" in indexes

    def test_idempotent_migrations(self, tmp_db):
        v1 = apply_migrations(tmp_db)
        v2 = apply_migrations(tmp_db)
        assert v1 == v2

    def test_get_current_version(self, tmp_db):
        conn = sqlite3.connect(tmp_db)
        assert get_current_version(conn) == 0
        conn.close()

        apply_migrations(tmp_db)
        conn = sqlite3.connect(tmp_db)
        version = get_current_version(conn)
        conn.close()
        assert version == 2

    def test_reset_database(self, tmp_db):
        apply_migrations(tmp_db)
        conn = sqlite3.connect(tmp_db)
        conn.execute(
            "INSERT INTO quota_configs (id, survey_id, total_target) VALUES (?, ?, ?)",
            ("q1", "s1", 10),
        )
        conn.commit()
        conn.close()

        reset_database(tmp_db)

        conn = sqlite3.connect(tmp_db)
        count = conn.execute("SELECT COUNT(*) FROM quota_configs").fetchone()[0]
        conn.close()
        assert count == 0

    def test_wal_mode_enabled(self, tmp_db):
        apply_migrations(tmp_db)
        conn = sqlite3.connect(tmp_db)
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        conn.close()
        assert mode == "wal"

    def test_bucket_needs_exactly_one_target(self, tmp_db):
        apply_migrations(tmp_db)
        conn = sqlite3.connect(tmp_db)
        conn.execute(
            "INSERT INTO quota_configs (id, survey_id, total_target) VALUES ('q1', 's1', 10)"
        )
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """INSERT INTO quota_buckets (id, quota_id, dimension_key, operator, target_count,
                   target_percentage) VALUES ('b1', 'q1', 'AGE', 'EQ', 5, 50)"""
            )
        conn.close()


# --- Model Tests ---

class TestModels:
    def test_parse_between(self):
        rule = parse_rule("BETWEEN", {"min": 18, "max": 25})
        assert isinstance(rule, RangeRule)
        assert rule.minimum == 18 and rule.maximum == 25
        assert rule.operand() == {"min": 18, "max": 25}

    def test_range_alias(self):
        rule = parse_rule("range", {"min": 1, "max": 2})
        assert rule.operator is Operator.BETWEEN

    def test_parse_in_stringifies(self):
        rule = parse_rule("IN", ["M", 2, 3.0])
        assert isinstance(rule, CategoricalRule)
        assert rule.values == ("M", "2", "3")

    def test_parse_intersects(self):
        rule = parse_rule("INTERSECTS", ["dog", "cat"])
        assert isinstance(rule, SetRule)
        assert rule.operator is Operator.INTERSECTS

    def test_parse_geo(self):
        rule = parse_rule("GEO", {"country": "US", "city": "Austin"})
        assert isinstance(rule, GeoRule)
        assert rule.specificity == 2
        assert rule.operand() == {"country": "US", "city": "Austin"}

    @pytest.mark.parametrize(
        "operator,operand",
        [
            ("BETWEEN", {"min": 30, "max": 18}),
            ("BETWEEN", [18, 25]),
            ("GTE", "abc"),
            ("IN", []),
            ("EQ", ["a"]),
            ("GEO", {"planet": "Mars"}),
            ("LIKE", "x"),
        ],
    )
    def test_strict_rejects_malformed(self, operator, operand):
        with pytest.raises(ConfigurationError):
            parse_rule(operator, operand)

    def test_lenient_degrades_to_unknown(self):
        rule = parse_rule("LIKE", "x", strict=False)
        assert isinstance(rule, UnknownRule)
        assert rule.operand() == "x"

    def test_stringify(self):
        assert stringify(True) == "true"
        assert stringify(2.0) == "2"
        assert stringify(2.5) == "2.5"
        assert stringify("M") == "M"

    def test_bucket_row(self):
        bucket = make_bucket("b1")
        row = bucket.to_row()
        assert len(row) == 12
        assert row[5] == "BETWEEN"
        assert row[6] == '{"min": 18, "max": 25}'

    def test_bucket_from_row_with_bad_operand(self):
        row = {
            "id": "b1", "quota_id": "q1", "dimension_key": "AGE", "operator": "BETWEEN",
            "operand": "not json", "target_count": 5,
        }
        bucket = QuotaBucket.from_row(row)
        assert isinstance(bucket.rule, UnknownRule)

    def test_respondent_row(self):
        r = make_respondent("q1")
        row = r.to_row()
        assert len(row) == 9
        assert row[3] == "QUALIFIED"
        assert row[8]  # created_at filled in

    def test_callback_template(self):
        config = make_config(completed_url="https://v/c", quota_full_url="https://v/f")
        assert config.callback_template(RespondentStatus.COMPLETED) == "https://v/c"
        assert config.callback_template(RespondentStatus.TERMINATED) is None
        assert config.callback_template(RespondentStatus.QUOTA_FULL) == "https://v/f"


# --- Quota Store Tests ---

class TestQuotaStore:
    @pytest.mark.asyncio
    async def test_initialize(self, store):
        assert store._conn is not None
        assert await store.integrity_check()

    @pytest.mark.asyncio
    async def test_save_and_get_quota(self, store):
        saved = await seed(store)
        assert saved.id == "q-survey-1"
        assert saved.total_target == 10
        assert saved.created_at is not None

        by_survey = await store.get_quota_by_survey("survey-1")
        assert by_survey is not None and by_survey.id == saved.id

        buckets = await store.get_buckets(saved.id)
        assert [b.id for b in buckets] == ["b-young", "b-old"]
        assert buckets[0].rule == RangeRule(operator=Operator.BETWEEN, minimum=18, maximum=25)

        dims = await store.get_dimensions(saved.id)
        assert [d.dimension_key for d in dims] == ["AGE"]

    @pytest.mark.asyncio
    async def test_save_replaces_buckets_and_keeps_counters(self, store):
        saved = await seed(store)
        async with store.transaction() as conn:
            assert await store.increment_current_with_ceiling(conn, saved.id)

        replacement = make_config(total_target=20)
        replacement.id = "ignored-new-id"
        new_bucket = make_bucket(
            "b-all", quota_id=replacement.id,
            rule=RangeRule(operator=Operator.GTE, minimum=0), target_count=20,
        )
        again = await store.save_quota(replacement, [], [new_bucket])

        assert again.id == saved.id
        assert again.total_target == 20
        assert again.current_count == 1
        assert [b.id for b in await store.get_buckets(saved.id)] == ["b-all"]
        assert await store.get_dimensions(saved.id) == []

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_quota("nope") is None
        assert await store.get_respondent("nope") is None

    @pytest.mark.asyncio
    async def test_list_quotas(self, store):
        await seed(store)
        await store.save_quota(make_config("survey-2"), [], [])
        quotas = await store.list_quotas()
        assert {q.survey_id for q in quotas} == {"survey-1", "survey-2"}

    @pytest.mark.asyncio
    async def test_set_active_flags(self, store):
        saved = await seed(store)
        assert await store.set_quota_active(saved.id, False)
        assert (await store.get_quota(saved.id)).is_active is False
        assert await store.set_bucket_active("b-old", False)
        active = await store.get_buckets(saved.id, active_only=True)
        assert [b.id for b in active] == ["b-young"]
        assert not await store.set_quota_active("nope", True)

    @pytest.mark.asyncio
    async def test_delete_cascades(self, store):
        saved = await seed(store)
        async with store.transaction() as conn:
            await store.insert_respondent(conn, make_respondent(saved.id))
        assert await store.delete_quota(saved.id)
        assert await store.get_buckets(saved.id) == []
        assert await store.get_respondent("r-1") is None

    @pytest.mark.asyncio
    async def test_load_snapshot(self, store):
        saved = await seed(store)
        await store.set_bucket_active("b-old", False)
        async with store.transaction() as conn:
            snapshot = await store.load_snapshot(conn, saved.id)
            assert await store.load_snapshot(conn, "nope") is None
        assert snapshot.config.id == saved.id
        assert [b.id for b in snapshot.buckets] == ["b-young"]
        assert snapshot.buckets_for("AGE")[0].id == "b-young"
        assert snapshot.buckets_for("GENDER") == []


# --- Transactions & Counters ---

class TestTransactions:
    @pytest.mark.asyncio
    async def test_rollback_on_error(self, store):
        saved = await seed(store)
        with pytest.raises(RuntimeError):
            async with store.transaction() as conn:
                await store.insert_respondent(conn, make_respondent(saved.id))
                await store.increment_quota_counter(conn, saved.id, "qualified_count")
                raise RuntimeError("boom")

        assert await store.get_respondent("r-1") is None
        assert (await store.get_quota(saved.id)).qualified_count == 0

    @pytest.mark.asyncio
    async def test_reads_wait_for_open_transaction(self, store):
        saved = await seed(store)
        with pytest.raises(RuntimeError):
            async with store.transaction() as conn:
                assert await store.increment_current_with_ceiling(conn, saved.id)
                quota_read = asyncio.create_task(store.get_quota(saved.id))
                buckets_read = asyncio.create_task(store.get_buckets(saved.id))
                await asyncio.sleep(0.05)
                assert not quota_read.done()
                assert not buckets_read.done()
                raise RuntimeError("ceiling")

        assert (await quota_read).current_count == 0
        assert len(await buckets_read) == 2

    @pytest.mark.asyncio
    async def test_respondent_roundtrip(self, store):
        saved = await seed(store)
        async with store.transaction() as conn:
            await store.insert_respondent(conn, make_respondent(saved.id))

        r = await store.get_respondent("r-1")
        assert r.status is RespondentStatus.QUALIFIED
        assert r.answers == [Answer(dimension_key="AGE", value=20)]
        assert r.matched_buckets[0].bucket_id == "b-young"
        assert r.created_at is not None

    @pytest.mark.asyncio
    async def test_transition_only_from_qualified(self, store):
        saved = await seed(store)
        async with store.transaction() as conn:
            await store.insert_respondent(conn, make_respondent(saved.id))
            assert await store.transition_respondent(
                conn, "r-1", RespondentStatus.COMPLETED, external_response_id="resp-9"
            )
            assert not await store.transition_respondent(conn, "r-1", RespondentStatus.TERMINATED)

        r = await store.get_respondent("r-1")
        assert r.status is RespondentStatus.COMPLETED
        assert r.external_response_id == "resp-9"
        assert r.reason == "QUALIFIED"
        assert r.updated_at is not None

    @pytest.mark.asyncio
    async def test_current_count_ceiling(self, store):
        saved = await seed(store, total_target=2)
        async with store.transaction() as conn:
            results = [await store.increment_current_with_ceiling(conn, saved.id) for _ in range(3)]
        assert results == [True, True, False]
        assert (await store.get_quota(saved.id)).current_count == 2

    @pytest.mark.asyncio
    async def test_bucket_ceiling(self, store):
        await seed(store)
        async with store.transaction() as conn:
            results = [await store.increment_bucket_with_ceiling(conn, "b-young", 1) for _ in range(2)]
            bucket = await store.fetch_bucket(conn, "b-young")
            assert await store.fetch_bucket(conn, "nope") is None
        assert results == [True, False]
        assert bucket.current_count == 1

    @pytest.mark.asyncio
    async def test_tally_counter_whitelist(self, store):
        saved = await seed(store)
        async with store.transaction() as conn:
            await store.increment_quota_counter(conn, saved.id, "terminated_count")
            with pytest.raises(ValueError):
                await store.increment_quota_counter(conn, saved.id, "current_count")
        assert (await store.get_quota(saved.id)).terminated_count == 1

    @pytest.mark.asyncio
    async def test_counts_and_listing(self, store):
        saved = await seed(store)
        async with store.transaction() as conn:
            await store.insert_respondent(conn, make_respondent(saved.id, "r-1"))
            await store.insert_respondent(
                conn, make_respondent(saved.id, "r-2", RespondentStatus.TERMINATED)
            )
        counts = await store.count_respondents_by_status(saved.id)
        assert counts["QUALIFIED"] == 1
        assert counts["TERMINATED"] == 1
        assert counts["COMPLETED"] == 0

        terminated = await store.list_respondents(saved.id, status=RespondentStatus.TERMINATED)
        assert [r.id for r in terminated] == ["r-2"]
        assert len(await store.list_respondents(saved.id)) == 2
        assert len(await store.list_respondents(saved.id, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_locked_database_is_transient(self, store, tmp_db):
        await seed(store)
        fast = QuotaStore(tmp_db, busy_timeout_ms=0)
        await fast.initialize()
        try:
            async with store.transaction():
                with pytest.raises(TransientStoreError) as exc_info:
                    async with fast.transaction():
                        pass
            assert exc_info.value.retryable is True
        finally:
            await fast.close()

    def test_is_transient(self):
        assert _is_transient(sqlite3.OperationalError("database is locked"))
        assert not _is_transient(sqlite3.OperationalError("no such table: x"))
