"""Tests for flag and experiment aggregation."""
import json
from datetime import datetime, timezone

import pandas as pd
import pytest
from conftest import make_experiment

from togglebox.analyze import compute_experiment_results, compute_flag_stats, load_flag_stats, run_analysis
from togglebox.event_store import append_events
from togglebox.schema import (
    ConversionEvent,
    ExposureEvent,
    FlagEvaluationEvent,
    MetricDefinition,
    MetricType,
    ResultStatus,
    ServedValue,
)


def _exposures(n_control, n_treatment):
    rows = [{"experiment_key": "checkout_button", "variation_key": "control", "user_id": f"c{i}"} for i in range(n_control)]
    rows += [{"experiment_key": "checkout_button", "variation_key": "treatment", "user_id": f"t{i}"} for i in range(n_treatment)]
    return pd.DataFrame(rows)


def _conversions(rows):
    return pd.DataFrame(
        [dict(experiment_key="checkout_button", value=None, **r) for r in rows],
        columns=["experiment_key", "metric_id", "variation_key", "user_id", "value"],
    )


def test_flag_stats():
    ts = [datetime(2025, 1, 1, 9, tzinfo=timezone.utc)] * 3 + [datetime(2025, 1, 2, 9, tzinfo=timezone.utc)]
    df = pd.DataFrame({
        "flag_key": ["f", "f", "f", "f"],
        "value": ["A", "A", "B", "A"],
        "user_id": ["u1", "u1", "u2", "u3"],
        "country": ["US", "US", "DE", None],
        "timestamp": ts,
    })
    stats = compute_flag_stats("f", df)
    assert stats.total_evaluations == 4
    assert (stats.value_a_count, stats.value_b_count) == (3, 1)
    assert (stats.unique_users_a, stats.unique_users_b) == (2, 1)
    assert {c.country: (c.value_a_count, c.value_b_count) for c in stats.by_country} == {"US": (2, 0), "DE": (0, 1)}
    assert [(d.date, d.value_a_count) for d in stats.daily] == [("2025-01-01", 2), ("2025-01-02", 1)]
    assert stats.last_evaluated_at == ts[-1]


def test_flag_stats_empty():
    assert compute_flag_stats("f", pd.DataFrame()).total_evaluations == 0


def test_participants_are_distinct_exposed_users():
    exposures = pd.concat([_exposures(3, 2), _exposures(1, 0)], ignore_index=True)
    results = compute_experiment_results(make_experiment(), exposures, _conversions([]))
    by_key = {v.variation_key: v for v in results.variations}
    assert by_key["control"].participants == 3
    assert by_key["control"].exposures == 4
    assert results.total_participants == 5


def test_conversion_counted_once_per_user_and_lift():
    conversions = _conversions([
        {"metric_id": "purchase", "variation_key": "control", "user_id": "c0"},
        {"metric_id": "purchase", "variation_key": "control", "user_id": "c0"},
        {"metric_id": "purchase", "variation_key": "treatment", "user_id": "t0"},
        {"metric_id": "purchase", "variation_key": "treatment", "user_id": "t1"},
    ])
    results = compute_experiment_results(make_experiment(), _exposures(10, 10), conversions)
    control, treatment = results.variations
    assert control.conversions == 1 and control.conversion_rate == pytest.approx(0.1)
    assert treatment.conversions == 2 and treatment.conversion_rate == pytest.approx(0.2)
    assert control.is_control and control.relative_lift is None
    assert treatment.relative_lift == pytest.approx(1.0)
    assert results.total_conversions == 3
    purchase = [m for m in results.metrics if m.metric_id == "purchase" and m.variation_key == "control"][0]
    assert purchase.count == 2
    assert purchase.mean == pytest.approx(0.1)


def test_sum_metric_totals_values():
    conversions = _conversions([])
    conversions = pd.DataFrame([
        {"experiment_key": "checkout_button", "metric_id": "revenue", "variation_key": "treatment", "user_id": "t0", "value": 10.0},
        {"experiment_key": "checkout_button", "metric_id": "revenue", "variation_key": "treatment", "user_id": "t0", "value": 5.0},
        {"experiment_key": "checkout_button", "metric_id": "revenue", "variation_key": "treatment", "user_id": "t1", "value": 15.0},
    ])
    results = compute_experiment_results(make_experiment(), _exposures(2, 4), conversions)
    revenue = [m for m in results.metrics if m.metric_id == "revenue" and m.variation_key == "treatment"][0]
    assert revenue.metric_type is MetricType.SUM
    assert revenue.sum == pytest.approx(30.0)
    assert revenue.mean == pytest.approx(7.5)  # per participant, zero-filled
    assert revenue.conversions == 2
    assert revenue.standard_error is not None


def test_average_and_count_metrics():
    exp = make_experiment(secondary_metrics=[
        MetricDefinition(id="aov", name="AOV", event_name="purchase", metric_type=MetricType.AVERAGE),
        MetricDefinition(id="clicks", name="Clicks", event_name="click", metric_type=MetricType.COUNT),
    ])
    conversions = pd.DataFrame([
        {"experiment_key": "checkout_button", "metric_id": "aov", "variation_key": "control", "user_id": "c0", "value": 20.0},
        {"experiment_key": "checkout_button", "metric_id": "aov", "variation_key": "control", "user_id": "c1", "value": 40.0},
        {"experiment_key": "checkout_button", "metric_id": "clicks", "variation_key": "control", "user_id": "c0", "value": None},
        {"experiment_key": "checkout_button", "metric_id": "clicks", "variation_key": "control", "user_id": "c0", "value": None},
    ])
    results = compute_experiment_results(exp, _exposures(4, 4), conversions)
    metrics = {(m.metric_id, m.variation_key): m for m in results.metrics}
    assert metrics[("aov", "control")].mean == pytest.approx(30.0)
    assert metrics[("clicks", "control")].count == 2
    assert metrics[("clicks", "control")].mean == pytest.approx(0.5)


def test_orphan_conversions_are_ignored_with_warning():
    conversions = _conversions([{"metric_id": "purchase", "variation_key": "control", "user_id": "stranger"}])
    results = compute_experiment_results(make_experiment(), _exposures(2, 2), conversions)
    assert results.total_conversions == 0
    assert any("without a matching exposure" in w for w in results.warnings)


def test_status_collecting_until_minimum_sample():
    exp = make_experiment(minimum_sample_size=5)
    assert compute_experiment_results(exp, _exposures(5, 4), _conversions([])).status is ResultStatus.COLLECTING
    ready = compute_experiment_results(exp, _exposures(5, 5), _conversions([]))
    assert ready.status is ResultStatus.INCONCLUSIVE
    assert ready.p_value is None and ready.is_significant is False


def test_run_analysis_writes_results(tmp_path):
    exp = make_experiment(minimum_sample_size=1)
    events = [
        ExposureEvent(experiment_key=exp.experiment_key, variation_key="control", user_id="u1"),
        ExposureEvent(experiment_key=exp.experiment_key, variation_key="treatment", user_id="u2"),
        ConversionEvent(experiment_key=exp.experiment_key, metric_id="purchase", variation_key="treatment", user_id="u2"),
    ]
    append_events(events, exp.platform, exp.environment, base_dir=str(tmp_path / "events"))
    results = run_analysis(exp, data_dir=str(tmp_path / "events"), artifacts_dir=str(tmp_path / "artifacts"))
    out = tmp_path / "artifacts" / exp.experiment_key
    payload = json.loads((out / "results.json").read_text())
    assert payload["experimentKey"] == exp.experiment_key
    assert payload["totalParticipants"] == 2
    assert payload["totalConversions"] == 1
    assert (out / "variations.csv").exists()
    assert results.status is ResultStatus.INCONCLUSIVE


def test_na_like_ids_count_as_distinct_participants(tmp_path):
    """Users 'NA', 'null' and 'None' stay distinct participants after a store round trip."""
    users = ["NA", "null", "None", "u1"]
    append_events(
        [ExposureEvent(experiment_key="checkout_button", variation_key="control", user_id=u) for u in users]
        + [ConversionEvent(experiment_key="checkout_button", metric_id="purchase", variation_key="control", user_id="NA")],
        "web", "production", base_dir=str(tmp_path / "events"),
    )
    results = run_analysis(
        make_experiment(), data_dir=str(tmp_path / "events"), artifacts_dir=str(tmp_path / "artifacts"),
    )
    control = next(v for v in results.variations if v.variation_key == "control")
    assert results.total_participants == 4
    assert control.participants == 4
    assert control.conversions == 1
    assert not any("without a matching exposure" in w for w in results.warnings)


def test_flag_stats_keep_namibia(tmp_path):
    append_events(
        [FlagEvaluationEvent(flag_key="f", value=ServedValue.A, user_id="NA", country="NA")],
        "web", "production", base_dir=str(tmp_path),
    )
    stats = load_flag_stats("web", "production", "f", data_dir=str(tmp_path))
    assert stats.unique_users_a == 1
    assert [(c.country, c.value_a_count) for c in stats.by_country] == [("NA", 1)]
