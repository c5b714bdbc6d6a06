"""Tests for the quota engine: matching, targets, definitions and the evaluator."""

from __future__ import annotations

import pytest

from surveyquota.engine.definition import parse_quota_definition, validate_quota_definition
from surveyquota.engine.evaluator import AdmissionEvaluator, Reason
from surveyquota.engine.matcher import match, rule_matches, to_number
from surveyquota.engine.targets import check_targets, find_overlaps, format_bucket_status, resolve_target
from surveyquota.errors import ConfigurationError
from surveyquota.storage.models import (
    Answer,
    QuotaBucket,
    QuotaConfig,
    QuotaSnapshot,
    RespondentStatus,
    parse_rule,
)


def bucket(
    bucket_id: str,
    operator: str,
    operand,
    dimension_key: str = "AGE",
    target_count=None,
    target_percentage=None,
    current_count: int = 0,
    is_active: bool = True,
) -> QuotaBucket:
    if target_count is None and target_percentage is None:
        target_count = 10
    return QuotaBucket(
        id=bucket_id,
        quota_id="q1",
        dimension_key=dimension_key,
        rule=parse_rule(operator, operand),
        label=bucket_id,
        target_count=target_count,
        target_percentage=target_percentage,
        current_count=current_count,
        is_active=is_active,
    )


def snapshot(buckets, total_target: int = 100, current_count: int = 0, is_active: bool = True) -> QuotaSnapshot:
    config = QuotaConfig(
        id="q1",
        survey_id="s1",
        total_target=total_target,
        current_count=current_count,
        is_active=is_active,
    )
    return QuotaSnapshot(config=config, buckets=list(buckets))


# --- Matcher ---

class TestMatcher:
    def test_between_inclusive(self):
        b = bucket("a", "BETWEEN", {"min": 18, "max": 25})
        assert rule_matches(b, 18)
        assert rule_matches(b, 25)
        assert rule_matches(b, "21")
        assert not rule_matches(b, 26)
        assert not rule_matches(b, 17.9)

    def test_gte_lte(self):
        assert rule_matches(bucket("a", "GTE", 65), 65)
        assert not rule_matches(bucket("a", "GTE", 65), 64)
        assert rule_matches(bucket("a", "LTE", 17), 17)
        assert not rule_matches(bucket("a", "LTE", 17), 18)

    def test_non_numeric_never_matches_range(self):
        b = bucket("a", "BETWEEN", {"min": 0, "max": 100})
        assert not rule_matches(b, "abc")
        assert not rule_matches(b, True)
        assert not rule_matches(b, None)
        assert not rule_matches(b, [20])
        assert match([bucket("senior", "GTE", 45)], "Infinity") is None
        assert match([bucket("minor", "LTE", 17)], "-inf") is None
        assert not rule_matches(b, "1_0")

    def test_to_number(self):
        assert to_number("  42 ") == 42.0
        assert to_number(3) == 3.0
        assert to_number("nan") is None
        assert to_number(False) is None
        assert to_number("") is None
        assert to_number("-7.5") == -7.5
        assert to_number(".5") == 0.5
        for text in ("inf", "Infinity", "-inf", "1_000", "1e3", "0x10", "twenty"):
            assert to_number(text) is None, text
        assert to_number(float("inf")) is None
        assert to_number(10 ** 400) is None

    def test_eq_and_in_compare_as_strings(self):
        assert rule_matches(bucket("a", "EQ", "M", "GENDER"), "M")
        assert not rule_matches(bucket("a", "EQ", "M", "GENDER"), "m")
        assert rule_matches(bucket("a", "EQ", 1, "GENDER"), "1")
        assert rule_matches(bucket("a", "EQ", "1", "GENDER"), 1.0)
        assert rule_matches(bucket("a", "IN", ["F", "NB"], "GENDER"), "NB")
        assert not rule_matches(bucket("a", "IN", ["F", "NB"], "GENDER"), ["F"])

    def test_intersects(self):
        b = bucket("a", "INTERSECTS", ["dog", "cat"], "PETS")
        assert rule_matches(b, ["fish", "cat"])
        assert not rule_matches(b, ["fish"])
        assert not rule_matches(b, "cat")
        assert not rule_matches(b, [])

    def test_geo(self):
        b = bucket("a", "GEO", {"country": "US", "state": "CA"}, "REGION")
        assert rule_matches(b, {"country": "us", "state": "CA", "city": "LA"})
        assert not rule_matches(b, {"country": "US", "state": "NY"})
        assert not rule_matches(b, {"country": "US"})
        assert not rule_matches(b, "US")

    def test_first_match_wins(self):
        buckets = [
            bucket("young", "BETWEEN", {"min": 18, "max": 30}),
            bucket("mid", "BETWEEN", {"min": 25, "max": 40}),
        ]
        assert match(buckets, 27).id == "young"
        assert match(buckets, 35).id == "mid"
        assert match(buckets, 50) is None
        assert match([], 27) is None

    def test_most_specific_geo_wins(self):
        buckets = [
            bucket("us", "GEO", {"country": "US"}, "REGION"),
            bucket("ca", "GEO", {"country": "US", "state": "CA"}, "REGION"),
        ]
        assert match(buckets, {"country": "US", "state": "CA"}).id == "ca"
        assert match(buckets, {"country": "US", "state": "TX"}).id == "us"

    def test_unknown_rule_never_matches(self):
        b = QuotaBucket.from_row({
            "id": "x", "quota_id": "q1", "dimension_key": "AGE",
            "operator": "REGEX", "operand": '".*"', "target_count": 5,
        })
        assert match([b], "anything") is None


# --- Targets ---

class TestTargets:
    def test_resolve_count(self):
        assert resolve_target(bucket("a", "EQ", "x", target_count=7), 100) == 7

    def test_resolve_percentage_rounds_up(self):
        assert resolve_target(bucket("a", "EQ", "x", target_percentage=25), 40) == 10
        assert resolve_target(bucket("a", "EQ", "x", target_percentage=25), 41) == 11
        assert resolve_target(bucket("a", "EQ", "x", target_percentage=33.3), 3) == 1

    def test_resolve_percentage_exact(self):
        # 0.1 * 30 is 3.0000000000000004 in floating point
        assert resolve_target(bucket("a", "EQ", "x", target_percentage=10), 30) == 3

    def test_format_bucket_status(self):
        status = format_bucket_status(bucket("a", "EQ", "x", target_count=3, current_count=1), 100)
        assert status == {
            "target": 3,
            "current": 1,
            "remaining": 2,
            "percentage_filled": 33.33,
            "is_full": False,
        }

    def test_check_targets_ok(self):
        report = check_targets(100, [
            bucket("a", "BETWEEN", {"min": 18, "max": 30}, target_percentage=50),
            bucket("b", "BETWEEN", {"min": 31, "max": 99}, target_percentage=50),
        ])
        assert report.ok
        assert report.warnings == []

    def test_percentages_over_100_error(self):
        report = check_targets(100, [
            bucket("a", "BETWEEN", {"min": 18, "max": 30}, target_percentage=60),
            bucket("b", "BETWEEN", {"min": 31, "max": 99}, target_percentage=50),
        ])
        assert not report.ok
        assert "110%" in report.errors[0]

    def test_count_sum_mismatch_warns(self):
        report = check_targets(100, [
            bucket("a", "EQ", "M", "GENDER", target_count=40),
            bucket("b", "EQ", "F", "GENDER", target_count=40),
        ])
        assert report.ok
        assert any("sum to 80" in w for w in report.warnings)

    def test_mistyped_targets_are_errors(self):
        report = check_targets(100, [
            bucket("a", "EQ", "M", "GENDER", target_count="40"),
            bucket("b", "EQ", "F", "GENDER", target_percentage="50"),
        ])
        assert report.errors == [
            "bucket a: target_count must be an integer, got '40'",
            "bucket b: target_percentage must be a number, got '50'",
        ]

    def test_total_target_must_be_positive(self):
        assert not check_targets(0, []).ok
        assert not check_targets(True, []).ok

    def test_overlap_warning(self):
        buckets = [
            bucket("a", "BETWEEN", {"min": 18, "max": 30}),
            bucket("b", "GTE", 25),
            bucket("c", "IN", ["x"]),
        ]
        overlaps = find_overlaps(buckets)
        assert len(overlaps) == 1
        assert "bucket a overlaps bucket b" in overlaps[0]


# --- Definitions ---

DEFINITION = {
    "survey_id": "s1",
    "total_target": 40,
    "vendor_id": "innovate",
    "callbacks": {"completed": "https://v/c?r={respondent_id}"},
    "dimensions": [
        {
            "key": "AGE",
            "vendor_question_id": "1",
            "buckets": [
                {"label": "18-30", "operator": "BETWEEN", "value": {"min": 18, "max": 30}, "target_percentage": 50},
                {"label": "31+", "operator": "GTE", "value": 31, "target_percentage": 50},
            ],
        },
        {
            "key": "GENDER",
            "vendor_question_id": "2",
            "options": [
                {"option_id": "M", "target": 20, "vendor_option_id": "1"},
                {"option_id": "F", "target": 20, "vendor_option_id": "2"},
                {"option_id": "X", "target": 0, "vendor_option_id": "3"},
            ],
        },
    ],
}


class TestDefinition:
    def test_parse(self):
        definition = parse_quota_definition(DEFINITION)
        assert definition.config.survey_id == "s1"
        assert definition.config.completed_url == "https://v/c?r={respondent_id}"
        assert [d.dimension_key for d in definition.dimensions] == ["AGE", "GENDER"]
        # Option X has no positive target and is dropped
        assert [b.label for b in definition.buckets] == ["18-30", "31+", "M", "F"]
        assert definition.buckets[2].operator == "EQ"
        assert definition.buckets[2].vendor_option_id == "1"
        assert all(b.quota_id == definition.config.id for b in definition.buckets)

    def test_problems_are_collected(self):
        bad = {
            "survey_id": "s1",
            "total_target": 10,
            "dimensions": [
                {"key": "AGE", "buckets": [
                    {"label": "bad", "operator": "BETWEEN", "value": {"min": 5}, "target_count": 3},
                    {"label": "both", "operator": "GTE", "value": 1, "target_count": 3, "target_percentage": 10},
                ]},
                {"key": "AGE"},
                {"buckets": []},
            ],
        }
        with pytest.raises(ConfigurationError) as exc_info:
            parse_quota_definition(bad)
        problems = exc_info.value.problems
        assert len(problems) == 4
        assert exc_info.value.to_dict()["details"]["problems"] == problems

    def test_missing_survey_id(self):
        with pytest.raises(ConfigurationError):
            parse_quota_definition({"total_target": 10})

    @pytest.mark.parametrize(
        "entry, expected",
        [
            ({"target_count": "5"}, "target_count must be an integer, got '5'"),
            ({"target_count": True}, "target_count must be an integer, got True"),
            ({"target_count": 2.5}, "target_count must be an integer, got 2.5"),
            ({"target_percentage": "50"}, "target_percentage must be a number, got '50'"),
            ({"target_percentage": float("inf")}, "target_percentage must be a number, got inf"),
        ],
    )
    def test_mistyped_targets_are_problems(self, entry, expected):
        bad = {
            "survey_id": "s1",
            "total_target": 10,
            "dimensions": [{"key": "AGE", "buckets": [
                dict({"label": "18+", "operator": "GTE", "value": 18}, **entry),
            ]}],
        }
        with pytest.raises(ConfigurationError) as exc_info:
            parse_quota_definition(bad)
        assert exc_info.value.problems == [f"dimension AGE, bucket '18+': {expected}"]

    def test_mistyped_option_target(self):
        bad = {
            "survey_id": "s1",
            "total_target": 10,
            "dimensions": [{"key": "GENDER", "options": [{"option_id": "M", "target": "5"}]}],
        }
        with pytest.raises(ConfigurationError) as exc_info:
            parse_quota_definition(bad)
        assert "target_count must be an integer" in exc_info.value.problems[0]

    def test_non_mapping_entries_are_problems(self):
        bad = {
            "survey_id": "s1",
            "total_target": 10,
            "dimensions": [
                "AGE",
                {"key": "GENDER", "buckets": ["M"], "options": [7]},
                {"key": "PETS", "buckets": "dog"},
            ],
        }
        with pytest.raises(ConfigurationError) as exc_info:
            parse_quota_definition(bad)
        assert exc_info.value.problems == [
            "dimension #1: expected a mapping, got 'AGE'",
            "dimension GENDER, buckets #1: expected a mapping, got 'M'",
            "dimension GENDER, options #1: expected a mapping, got 7",
            "dimension PETS: buckets must be a list",
        ]

    @pytest.mark.parametrize(
        "data",
        [
            {"survey_id": "s1", "total_target": 10, "dimensions": {"AGE": []}},
            {"survey_id": "s1", "total_target": 10, "callbacks": "https://v/c"},
        ],
    )
    def test_malformed_sections(self, data):
        with pytest.raises(ConfigurationError):
            parse_quota_definition(data)

    def test_validate_rejects_bad_total(self):
        definition = parse_quota_definition(DEFINITION)
        definition.config.total_target = 0
        with pytest.raises(ConfigurationError):
            validate_quota_definition(definition)


# --- Evaluator ---

AGE_BUCKETS = [
    bucket("18-30", "BETWEEN", {"min": 18, "max": 30}, target_count=2),
    bucket("31-50", "BETWEEN", {"min": 31, "max": 50}, target_count=2, current_count=2),
]
GENDER_BUCKETS = [
    bucket("M", "EQ", "M", "GENDER", target_count=5),
    bucket("F", "EQ", "F", "GENDER", target_count=5),
]


class TestEvaluator:
    def setup_method(self):
        self.evaluator = AdmissionEvaluator()

    def test_qualified(self):
        verdict = self.evaluator.evaluate(
            snapshot(AGE_BUCKETS + GENDER_BUCKETS),
            [Answer("AGE", 25), Answer("GENDER", "F")],
        )
        assert verdict.reason is Reason.QUALIFIED
        assert verdict.status is RespondentStatus.QUALIFIED
        assert [(m.dimension_key, m.bucket_id) for m in verdict.matched] == [("AGE", "18-30"), ("GENDER", "F")]

    def test_inactive(self):
        verdict = self.evaluator.evaluate(snapshot(AGE_BUCKETS, is_active=False), [Answer("AGE", 25)])
        assert verdict.reason is Reason.QUOTA_INACTIVE
        assert verdict.status is RespondentStatus.TERMINATED
        assert verdict.matched == []

    def test_zero_target_is_inactive(self):
        verdict = self.evaluator.evaluate(snapshot(AGE_BUCKETS, total_target=0), [Answer("AGE", 25)])
        assert verdict.reason is Reason.QUOTA_INACTIVE

    def test_total_full(self):
        verdict = self.evaluator.evaluate(
            snapshot(AGE_BUCKETS, total_target=10, current_count=10), [Answer("AGE", 25)]
        )
        assert verdict.reason is Reason.TOTAL_QUOTA_FULL
        assert verdict.status is RespondentStatus.QUOTA_FULL

    def test_no_bucket_match(self):
        verdict = self.evaluator.evaluate(snapshot(AGE_BUCKETS), [Answer("AGE", 70)])
        assert verdict.reason is Reason.NO_BUCKET_MATCH
        assert verdict.status is RespondentStatus.TERMINATED
        assert verdict.failed_dimension == "AGE"
        assert verdict.message == "disqualified: no bucket match"

    def test_bucket_full(self):
        verdict = self.evaluator.evaluate(snapshot(AGE_BUCKETS), [Answer("AGE", 40)])
        assert verdict.reason is Reason.BUCKET_FULL
        assert verdict.status is RespondentStatus.QUOTA_FULL
        assert verdict.matched == []

    def test_first_failing_dimension_wins(self):
        verdict = self.evaluator.evaluate(
            snapshot(AGE_BUCKETS + GENDER_BUCKETS),
            [Answer("GENDER", "X"), Answer("AGE", 40)],
        )
        assert verdict.reason is Reason.NO_BUCKET_MATCH
        assert verdict.failed_dimension == "GENDER"

    def test_unscreened_dimension_is_ignored(self):
        verdict = self.evaluator.evaluate(
            snapshot(AGE_BUCKETS), [Answer("AGE", 20), Answer("INCOME", 50000)]
        )
        assert verdict.qualified
        assert len(verdict.matched) == 1

    def test_inactive_buckets_are_skipped(self):
        buckets = [bucket("closed", "GTE", 0, is_active=False), bucket("open", "GTE", 0)]
        verdict = self.evaluator.evaluate(snapshot(buckets), [Answer("AGE", 20)])
        assert verdict.matched[0].bucket_id == "open"

    def test_percentage_bucket_full(self):
        buckets = [bucket("half", "GTE", 0, target_percentage=50, current_count=5)]
        verdict = self.evaluator.evaluate(snapshot(buckets, total_target=10), [Answer("AGE", 20)])
        assert verdict.reason is Reason.BUCKET_FULL

    def test_deterministic(self):
        snap = snapshot(AGE_BUCKETS + GENDER_BUCKETS)
        answers = [Answer("AGE", 25), Answer("GENDER", "M")]
        first = self.evaluator.evaluate(snap, answers)
        for _ in range(5):
            assert self.evaluator.evaluate(snap, answers) == first
