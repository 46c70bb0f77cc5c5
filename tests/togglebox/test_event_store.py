"""Tests for the CSV-backed event store."""
from datetime import datetime, timedelta, timezone

import pandas as pd

from togglebox.event_store import (
    append_events,
    get_store_summary,
    read_conversions,
    read_custom_events,
    read_exposures,
    read_flag_evaluations,
)
from togglebox.schema import (
    ConfigFetchEvent,
    ConversionEvent,
    CustomEvent,
    ExposureEvent,
    FlagEvaluationEvent,
    ServedValue,
)

T0 = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


def _events():
    return [
        FlagEvaluationEvent(flag_key="f1", value=ServedValue.A, user_id="u1", country="US", timestamp=T0),
        FlagEvaluationEvent(flag_key="f2", value=ServedValue.B, user_id="u2", timestamp=T0),
        ExposureEvent(experiment_key="exp", variation_key="control", user_id="u1", timestamp=T0),
        ExposureEvent(experiment_key="exp", variation_key="treatment", user_id="u2", timestamp=T0 + timedelta(days=2)),
        ConversionEvent(experiment_key="exp", metric_id="purchase", variation_key="control", user_id="u1", timestamp=T0),
        ConversionEvent(experiment_key="exp", metric_id="revenue", variation_key="control", user_id="u1", value=12.5, timestamp=T0),
        CustomEvent(event_name="signup", user_id="u1", properties={"plan": "pro"}, timestamp=T0),
        ConfigFetchEvent(key="theme", timestamp=T0),
    ]


def test_append_and_summary(tmp_path):
    assert append_events(_events(), "web", "prod", base_dir=str(tmp_path)) == 8
    assert get_store_summary("web", "prod", base_dir=str(tmp_path)) == {
        "n_flag_evaluations": 2,
        "n_exposures": 2,
        "n_conversions": 2,
        "n_custom_events": 1,
        "n_config_fetches": 1,
    }
    assert (tmp_path / "web" / "prod" / "exposures.csv").exists()


def test_appends_accumulate(tmp_path):
    append_events(_events(), "web", "prod", base_dir=str(tmp_path))
    append_events(_events(), "web", "prod", base_dir=str(tmp_path))
    assert len(read_exposures("web", "prod", base_dir=str(tmp_path))) == 4


def test_read_filters_by_key_and_window(tmp_path):
    append_events(_events(), "web", "prod", base_dir=str(tmp_path))
    base = str(tmp_path)
    evals = read_flag_evaluations("web", "prod", flag_key="f1", base_dir=base)
    assert evals["user_id"].tolist() == ["u1"]
    assert evals["value"].tolist() == ["A"]

    early = read_exposures("web", "prod", "exp", end_date=T0 + timedelta(days=1), base_dir=base)
    assert early["variation_key"].tolist() == ["control"]

    revenue = read_conversions("web", "prod", "exp", metric_id="revenue", base_dir=base)
    assert revenue["value"].tolist() == [12.5]

    custom = read_custom_events("web", "prod", "signup", base_dir=base)
    assert custom["properties"].tolist() == ['{"plan": "pro"}']


def test_environments_are_isolated(tmp_path):
    append_events(_events(), "web", "prod", base_dir=str(tmp_path))
    assert read_exposures("web", "staging", base_dir=str(tmp_path)).empty
    assert get_store_summary("web", "staging", base_dir=str(tmp_path))["n_exposures"] == 0


def test_na_like_user_ids_survive_round_trip(tmp_path):
    """'NA', 'null' and 'None' are ordinary user ids, not missing values."""
    users = ["NA", "null", "None", "u1"]
    append_events(
        [ExposureEvent(experiment_key="exp", variation_key="control", user_id=u, timestamp=T0) for u in users],
        "web", "prod", base_dir=str(tmp_path),
    )
    exposures = read_exposures("web", "prod", "exp", base_dir=str(tmp_path))
    assert exposures["user_id"].tolist() == users
    assert exposures["user_id"].nunique() == 4


def test_namibia_country_code_is_kept(tmp_path):
    append_events(
        [
            FlagEvaluationEvent(flag_key="f1", value=ServedValue.A, user_id="u1", country="NA", language="en", timestamp=T0),
            FlagEvaluationEvent(flag_key="f1", value=ServedValue.B, user_id="u2", timestamp=T0),
        ],
        "web", "prod", base_dir=str(tmp_path),
    )
    evals = read_flag_evaluations("web", "prod", "f1", base_dir=str(tmp_path))
    assert evals.loc[0, "country"] == "NA"
    assert pd.isna(evals.loc[1, "country"])
