"""
Synthetic traffic simulator.

Generates users with a country/language mix, runs them through flag
evaluation and experiment assignment exactly as the client does, and
simulates conversions per variation:
- each assigned user records one exposure
- conversion probability = baseline rate x per-variation relative effect
- value metrics draw a log-normal order value for converters

Events go through a StatsReporter into the local event store. Returns a run summary.
"""

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from .assignment import assign_variation_with_tracking
from .event_store import DEFAULT_STORE_DIR
from .flags import evaluate_flag_with_tracking
from .recording import EventStoreTransport, ReporterOptions, StatsReporter
from .schema import (
    CountryTarget,
    EvaluationContext,
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

logger = logging.getLogger(__name__)

SIMULATOR_SEED = 42
SIMULATOR_BATCH_SIZE = 500

DEFAULT_LOCALES: List[Tuple[str, str, float]] = [
    ("US", "en", 0.45),
    ("GB", "en", 0.15),
    ("DE", "de", 0.15),
    ("FR", "fr", 0.10),
    ("BR", "pt", 0.10),
    ("JP", "ja", 0.05),
]


def build_demo_flag(platform: str = "web", environment: str = "production") -> Flag:
    """Boolean flag rolled out 30/70 with a German-speakers override."""
    return Flag(
        platform=platform,
        environment=environment,
        flag_key="new_checkout",
        name="New checkout",
        enabled=True,
        flag_type=ValueType.BOOLEAN,
        value_a=FlagValue(ValueType.BOOLEAN, True),
        value_b=FlagValue(ValueType.BOOLEAN, False),
        targeting=Targeting(countries=[
            CountryTarget(country="DE", languages=[LanguageTarget(language="de", serve_value=ServedValue.A)]),
        ]),
        default_value=ServedValue.B,
        rollout_enabled=True,
        rollout_percentage_a=30.0,
        rollout_percentage_b=70.0,
    )


def build_demo_experiment(platform: str = "web", environment: str = "production") -> Experiment:
    """Running three-way checkout-button experiment with a conversion and a revenue metric."""
    return Experiment(
        platform=platform,
        environment=environment,
        experiment_key="checkout_button",
        name="Checkout button colour",
        hypothesis="A green button converts better than blue",
        status=ExperimentStatus.RUNNING,
        variations=[
            Variation(key="control", name="Blue", value=FlagValue(ValueType.STRING, "blue"), is_control=True),
            Variation(key="green", name="Green", value=FlagValue(ValueType.STRING, "green")),
            Variation(key="orange", name="Orange", value=FlagValue(ValueType.STRING, "orange")),
        ],
        control_variation="control",
        traffic_allocation=[
            TrafficAllocation("control", 34.0),
            TrafficAllocation("green", 33.0),
            TrafficAllocation("orange", 33.0),
        ],
        primary_metric=MetricDefinition(id="purchase", name="Purchase", event_name="purchase"),
        secondary_metrics=[
            MetricDefinition(
                id="revenue", name="Revenue", event_name="purchase",
                metric_type=MetricType.SUM, value_property="amount",
            ),
        ],
        minimum_sample_size=100,
    )


def _sample_contexts(n_users: int, locales: List[Tuple[str, str, float]]) -> List[EvaluationContext]:
    weights = np.array([w for _, _, w in locales], dtype=float)
    idx = np.random.choice(len(locales), size=n_users, p=weights / weights.sum())
    return [
        EvaluationContext(user_id=f"user_{i:06d}", country=locales[j][0], language=locales[j][1])
        for i, j in enumerate(idx)
    ]


def run_traffic_simulation(
    experiment: Experiment,
    flag: Optional[Flag] = None,
    n_users: int = 2000,
    baseline_rate: float = 0.10,
    variation_effects: Optional[Dict[str, float]] = None,
    mean_order_value: float = 40.0,
    locales: Optional[List[Tuple[str, str, float]]] = None,
    data_dir: str = DEFAULT_STORE_DIR,
    random_seed: int = SIMULATOR_SEED,
) -> Dict:
    """
    Simulate traffic against an experiment (and optionally a flag).

    Args:
        experiment: Experiment to assign users into
        flag: Flag to evaluate for every user (optional)
        n_users: Number of synthetic users
        baseline_rate: Conversion rate of the control variation
        variation_effects: Relative effect per variation key (e.g. {"green": 0.2} = +20%)
        mean_order_value: Mean of the simulated order value for value metrics
        locales: (country, language, weight) mix
        data_dir: Base directory for the event store
        random_seed: Random seed for reproducibility

    Returns:
        Dict with n_users, n_assigned, per-variation assignment counts, conversions, events_written
    """
    np.random.seed(random_seed)
    effects = variation_effects or {}
    contexts = _sample_contexts(n_users, locales or DEFAULT_LOCALES)

    flushed: List[int] = []
    reporter = StatsReporter(
        EventStoreTransport(experiment.platform, experiment.environment, base_dir=data_dir),
        ReporterOptions(batch_size=SIMULATOR_BATCH_SIZE, max_queue_size=SIMULATOR_BATCH_SIZE * 4),
        on_flush=flushed.append,
        start_thread=False,
    )

    by_variation: Dict[str, int] = {v.key: 0 for v in experiment.variations}
    conversions: Dict[str, int] = {v.key: 0 for v in experiment.variations}
    value_metrics = [m for m in experiment.metrics if m.metric_type.carries_value]
    primary = experiment.primary_metric
    n_flag_a = 0

    for ctx in contexts:
        if flag is not None:
            result = evaluate_flag_with_tracking(flag, ctx, reporter)
            n_flag_a += int(result.served_value is ServedValue.A)

        assignment = assign_variation_with_tracking(experiment, ctx, reporter)
        if assignment is not None:
            vkey = assignment.variation_key
            by_variation[vkey] += 1
            rate = np.clip(baseline_rate * (1 + effects.get(vkey, 0.0)), 0, 1)
            if primary is not None and np.random.random() < rate:
                conversions[vkey] += 1
                reporter.track_conversion(experiment.experiment_key, primary.id, vkey, ctx.user_id)
                for metric in value_metrics:
                    amount = float(np.random.lognormal(np.log(mean_order_value), 0.5))
                    reporter.track_conversion(
                        experiment.experiment_key, metric.id, vkey, ctx.user_id, round(amount, 2)
                    )

        if reporter.pending >= SIMULATOR_BATCH_SIZE:
            reporter.flush()

    reporter.close()

    summary = {
        "experiment_key": experiment.experiment_key,
        "n_users": n_users,
        "n_assigned": sum(by_variation.values()),
        "assignments": by_variation,
        "conversions": conversions,
        "events_written": sum(flushed),
        "random_seed": random_seed,
    }
    if flag is not None:
        summary["flag_key"] = flag.flag_key
        summary["flag_value_a"] = n_flag_a
        summary["flag_value_b"] = n_users - n_flag_a
    logger.info(f"Simulation complete: {summary}")
    return summary
