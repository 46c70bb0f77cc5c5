"""Tests for deterministic experiment assignment."""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from conftest import make_experiment

from togglebox.assignment import (
    AssignmentReason,
    assign_experiments,
    assign_variation,
    assign_variation_with_tracking,
    ineligibility_reason,
    is_in_variation,
    preview_assignment,
)
from togglebox.hashing import bucket
from togglebox.schema import (
    CountryTarget,
    EvaluationContext,
    ExperimentStatus,
    LanguageTarget,
    Targeting,
    TrafficAllocation,
)

USERS = [f"user_{i}" for i in range(10000)]


def _split(experiment):
    counts = {}
    for uid in USERS:
        a = assign_variation(experiment, EvaluationContext(uid))
        key = a.variation_key if a else None
        counts[key] = counts.get(key, 0) + 1
    return counts


def test_assignment_is_deterministic(experiment):
    """Same user and experiment always get the same variation."""
    ctx = EvaluationContext("cust_001")
    assert assign_variation(experiment, ctx) == assign_variation(experiment, ctx)


def test_non_assignable_statuses_return_none():
    """Draft, completed and archived experiments assign nobody."""
    for status in (ExperimentStatus.DRAFT, ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED):
        exp = make_experiment(status=status)
        assert all(assign_variation(exp, EvaluationContext(u)) is None for u in USERS[:500])


def test_paused_experiment_keeps_serving_same_variation(experiment):
    """Paused experiments recompute the same assignment as when running."""
    paused = replace(experiment, status=ExperimentStatus.PAUSED)
    for uid in USERS[:200]:
        ctx = EvaluationContext(uid)
        assert assign_variation(paused, ctx) == assign_variation(experiment, ctx)


def test_60_40_split(experiment):
    counts = _split(experiment)
    assert None not in counts
    assert 5700 <= counts["control"] <= 6300
    assert 3700 <= counts["treatment"] <= 4300


def test_allocation_gap_excludes_users():
    """[50, 30] leaves roughly 20% of users out."""
    exp = make_experiment(allocation=(("control", 50.0), ("treatment", 30.0)))
    counts = _split(exp)
    assert 1700 <= counts.get(None, 0) <= 2300


def test_walks_allocation_in_definition_order(experiment):
    """Boundaries are cumulative in the listed order, not re-sorted."""
    flipped = replace(experiment, traffic_allocation=[
        TrafficAllocation("treatment", 40.0), TrafficAllocation("control", 60.0),
    ])
    for uid in USERS[:300]:
        score = bucket(flipped.experiment_key, uid)
        expected = "treatment" if score < 40 else "control"
        assert assign_variation(flipped, EvaluationContext(uid)).variation_key == expected


def test_control_flag_propagates(experiment):
    for uid in USERS[:500]:
        a = assign_variation(experiment, EvaluationContext(uid))
        assert a.is_control == (a.variation_key == "control")


def test_reason_names_boundary(experiment):
    a = assign_variation(experiment, EvaluationContext("user_1"))
    assert a.reason.startswith("assigned via consistent hash")
    assert "cumulative" in a.reason


def test_country_targeting_and_force_include(experiment):
    """Non-matching country is excluded unless force-included."""
    targeted = replace(experiment, targeting=Targeting(
        countries=[CountryTarget(country="US")], force_include_users=["vip"],
    ))
    assert assign_variation(targeted, EvaluationContext("someone", "FR")) is None
    assert assign_variation(targeted, EvaluationContext("someone", "us")) is not None
    forced = assign_variation(targeted, EvaluationContext("vip", "FR"))
    assert forced is not None
    assert forced.reason.startswith(AssignmentReason.FORCE_INCLUDED_PREFIX)


def test_language_targeting(experiment):
    targeted = replace(experiment, targeting=Targeting(
        countries=[CountryTarget(country="CA", languages=[LanguageTarget(language="fr")])],
    ))
    assert assign_variation(targeted, EvaluationContext("u", "CA", "FR")) is not None
    assert assign_variation(targeted, EvaluationContext("u", "CA", "en")) is None


def test_force_exclude(experiment):
    excluded = replace(experiment, targeting=Targeting(force_exclude_users=["bot"]))
    assert assign_variation(excluded, EvaluationContext("bot")) is None
    assert ineligibility_reason(excluded, EvaluationContext("bot")) == AssignmentReason.FORCE_EXCLUDED


def test_schedule_window(experiment):
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    future = replace(experiment, scheduled_start_at=now + timedelta(days=1))
    past = replace(experiment, scheduled_end_at=now - timedelta(days=1))
    ctx = EvaluationContext("u")
    assert assign_variation(future, ctx, now=now) is None
    assert assign_variation(past, ctx, now=now) is None
    assert assign_variation(experiment, ctx, now=now) is not None


def test_dangling_allocation_key_returns_none(experiment):
    broken = replace(experiment, traffic_allocation=[TrafficAllocation("ghost", 100.0)])
    assert assign_variation(broken, EvaluationContext("u")) is None


def test_no_variations_returns_none(experiment):
    empty = replace(experiment, variations=[], traffic_allocation=[])
    assert assign_variation(empty, EvaluationContext("u")) is None


def test_tracking_reports_one_exposure_per_call(experiment, sink):
    ctx = EvaluationContext("user_9")
    first = assign_variation_with_tracking(experiment, ctx, sink)
    assign_variation_with_tracking(experiment, ctx, sink)
    assert sink.exposures == [("checkout_button", first.variation_key, "user_9")] * 2


def test_tracking_skips_unassigned(sink):
    draft = make_experiment(status=ExperimentStatus.DRAFT)
    assert assign_variation_with_tracking(draft, EvaluationContext("u"), sink) is None
    assert sink.exposures == []


def test_paused_experiment_assigns_without_exposure(experiment, sink):
    paused = replace(experiment, status=ExperimentStatus.PAUSED)
    ctx = EvaluationContext("u1")
    assignment = assign_variation_with_tracking(paused, ctx, sink)
    assert assignment == assign_variation(experiment, ctx)
    assert sink.exposures == []


def test_preview_matches_assignment_and_records_nothing(experiment, sink):
    ctx = EvaluationContext("user_42")
    assert preview_assignment(experiment, ctx) == assign_variation_with_tracking(experiment, ctx, sink)
    assert len(sink.exposures) == 1
    assert preview_assignment(make_experiment(status=ExperimentStatus.DRAFT), ctx) is None


def test_assign_experiments_and_is_in_variation(experiment):
    draft = make_experiment(status=ExperimentStatus.DRAFT, experiment_key="other")
    ctx = EvaluationContext("user_3")
    assignments = assign_experiments([experiment, draft], ctx)
    assert list(assignments) == ["checkout_button"]
    key = assignments["checkout_button"].variation_key
    assert is_in_variation(experiment, ctx, key)
