"""Pytest configuration - add src/ to path and shared fixtures."""
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT / "src"))

from togglebox.schema import (  # noqa: E402
    CountryTarget,
    Experiment,
    ExperimentStatus,
    Flag,
    FlagValue,
    LanguageTarget,
    MetricDefinition,
    MetricType,
    ServedValue,
    Targeting,
    TrafficAllocation,
    ValueType,
    Variation,
)


class RecordingSink:
    """StatsSink that keeps every call for assertions."""

    def __init__(self):
        self.evaluations = []
        self.exposures = []
        self.conversions = []
        self.config_fetches = []
        self.custom_events = []

    def track_flag_evaluation(self, flag_key, served_value, user_id, country=None, language=None):
        self.evaluations.append((flag_key, served_value, user_id, country, language))

    def track_experiment_exposure(self, experiment_key, variation_key, user_id):
        self.exposures.append((experiment_key, variation_key, user_id))

    def track_conversion(self, experiment_key, metric_id, variation_key, user_id, value=None):
        self.conversions.append((experiment_key, metric_id, variation_key, user_id, value))

    def track_config_fetch(self, key):
        self.config_fetches.append(key)

    def track_custom_event(self, event_name, user_id=None, properties=None):
        self.custom_events.append((event_name, user_id, properties))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def string_flag():
    return Flag(
        platform="web",
        environment="production",
        flag_key="checkout_theme",
        flag_type=ValueType.STRING,
        value_a=FlagValue(ValueType.STRING, "red"),
        value_b=FlagValue(ValueType.STRING, "blue"),
        enabled=True,
        targeting=Targeting(
            countries=[
                CountryTarget(
                    country="US",
                    serve_value=ServedValue.A,
                    languages=[LanguageTarget(language="es", serve_value=ServedValue.B)],
                ),
            ],
        ),
        default_value=ServedValue.B,
        rollout_enabled=False,
    )


@pytest.fixture
def bool_flag():
    return Flag(
        platform="web",
        environment="production",
        flag_key="dark_mode",
        enabled=True,
        default_value=ServedValue.B,
        rollout_enabled=True,
        rollout_percentage_a=50.0,
        rollout_percentage_b=50.0,
    )


def make_experiment(status=ExperimentStatus.RUNNING, allocation=(("control", 60.0), ("treatment", 40.0)), **kwargs):
    variations = [
        Variation(key="control", name="Control", value=FlagValue(ValueType.STRING, "blue"), is_control=True),
        Variation(key="treatment", name="Treatment", value=FlagValue(ValueType.STRING, "green")),
    ]
    defaults = dict(
        platform="web",
        environment="production",
        experiment_key="checkout_button",
        variations=variations,
        control_variation="control",
        traffic_allocation=[TrafficAllocation(k, p) for k, p in allocation],
        status=status,
        primary_metric=MetricDefinition(id="purchase", name="Purchase", event_name="purchase"),
        secondary_metrics=[
            MetricDefinition(id="revenue", name="Revenue", event_name="purchase", metric_type=MetricType.SUM),
        ],
    )
    defaults.update(kwargs)
    return Experiment(**defaults)


@pytest.fixture
def experiment():
    return make_experiment()
