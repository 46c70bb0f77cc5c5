"""
Flag and experiment aggregation.

Input: recorded flag evaluations, exposures and conversions (event store frames).
Output: FlagStats / ExperimentResults; run_analysis also saves
results.json + variations.csv to artifacts/experiments/<experiment_key>/.

Only raw per-variation aggregates are produced here. Significance testing
consumes ExperimentResults downstream.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .event_store import DEFAULT_STORE_DIR, read_conversions, read_exposures, read_flag_evaluations
from .schema import (
    CountryBreakdown,
    DailyFlagCounts,
    Experiment,
    ExperimentResults,
    FlagStats,
    MetricDefinition,
    MetricResult,
    MetricType,
    ResultStatus,
    ServedValue,
    VariationResult,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACTS_DIR = "artifacts/experiments"
DEFAULT_MINIMUM_SAMPLE_SIZE = 100


def compute_flag_stats(flag_key: str, evaluations: pd.DataFrame) -> FlagStats:
    """
    Aggregate evaluation events for one flag.

    Args:
        flag_key: Flag to aggregate
        evaluations: Frame with flag_key, value (A/B), user_id, country, timestamp

    Returns:
        FlagStats with totals, unique users per value, country and daily breakdowns
    """
    stats = FlagStats(flag_key=flag_key)
    if evaluations.empty:
        return stats
    df = evaluations[evaluations["flag_key"] == flag_key]
    if df.empty:
        return stats

    is_a = df["value"] == ServedValue.A.value
    is_b = df["value"] == ServedValue.B.value
    stats.total_evaluations = int(len(df))
    stats.value_a_count = int(is_a.sum())
    stats.value_b_count = int(is_b.sum())
    stats.unique_users_a = int(df.loc[is_a, "user_id"].nunique())
    stats.unique_users_b = int(df.loc[is_b, "user_id"].nunique())

    ts = pd.to_datetime(df["timestamp"], utc=True)
    stats.last_evaluated_at = ts.max().to_pydatetime()

    counts = df.assign(is_a=is_a.astype(int), is_b=is_b.astype(int))
    if "country" in counts.columns:
        by_country = counts.dropna(subset=["country"]).groupby("country")[["is_a", "is_b"]].sum()
        stats.by_country = [
            CountryBreakdown(country=str(country), value_a_count=int(row.is_a), value_b_count=int(row.is_b))
            for country, row in by_country.iterrows()
        ]

    daily = counts.assign(date=ts.dt.strftime("%Y-%m-%d")).groupby("date")[["is_a", "is_b"]].sum()
    stats.daily = [
        DailyFlagCounts(date=str(date), value_a_count=int(row.is_a), value_b_count=int(row.is_b))
        for date, row in daily.iterrows()
    ]
    return stats


def _per_user_totals(events: pd.DataFrame, users: pd.Index, column: Optional[str]) -> np.ndarray:
    """Per-participant totals (event counts, or value sums), zero-filled for users with no events."""
    if column is None:
        per_user = events.groupby("user_id").size()
    else:
        per_user = events.groupby("user_id")[column].sum()
    return per_user.reindex(users, fill_value=0).astype(float).to_numpy()


def _metric_result(
    metric: MetricDefinition,
    variation_key: str,
    participants: pd.Index,
    events: pd.DataFrame,
) -> MetricResult:
    n = len(participants)
    result = MetricResult(
        metric_id=metric.id,
        variation_key=variation_key,
        metric_type=metric.metric_type,
        sample_size=n,
        conversions=int(events["user_id"].nunique()) if not events.empty else 0,
        count=int(len(events)),
    )
    values = events["value"].dropna().astype(float) if not events.empty else pd.Series(dtype=float)
    result.sum = float(values.sum()) if metric.metric_type.carries_value else float(result.conversions)

    if metric.metric_type is MetricType.CONVERSION:
        if n > 0:
            p = result.conversions / n
            result.mean = p
            result.variance = p * (1 - p)
            result.standard_error = float(np.sqrt(p * (1 - p) / n))
        return result

    if metric.metric_type is MetricType.AVERAGE:
        sample = values.to_numpy()
    elif metric.metric_type is MetricType.SUM:
        sample = _per_user_totals(events.dropna(subset=["value"]), participants, "value") if n else np.array([])
    else:
        sample = _per_user_totals(events, participants, None) if n else np.array([])

    if len(sample) > 0:
        result.mean = float(np.mean(sample))
    if len(sample) > 1:
        result.variance = float(np.var(sample, ddof=1))
        result.standard_error = float(np.sqrt(result.variance / len(sample)))
    return result


def compute_experiment_results(
    experiment: Experiment,
    exposures: pd.DataFrame,
    conversions: pd.DataFrame,
    now: Optional[datetime] = None,
) -> ExperimentResults:
    """
    Aggregate exposures and conversions into per-variation results.

    Participants are distinct exposed users. For conversion metrics a user
    converts at most once; count metrics count events; sum and average
    metrics total the recorded values. Conversions from users never exposed
    to the reported variation are ignored and counted in ``warnings``.

    Args:
        experiment: Experiment definition (variations, metrics, minimum sample size)
        exposures: Frame with experiment_key, variation_key, user_id
        conversions: Frame with experiment_key, metric_id, variation_key, user_id, value

    Returns:
        ExperimentResults with status collecting or inconclusive
    """
    key = experiment.experiment_key
    results = ExperimentResults(experiment_key=key, last_updated_at=now or utcnow())
    variation_keys = [v.key for v in experiment.variations]

    if not exposures.empty:
        exposures = exposures[exposures["experiment_key"] == key]
        unknown = sorted(set(exposures["variation_key"]) - set(variation_keys))
        if unknown:
            results.warnings.append(f"exposures for unknown variations ignored: {', '.join(map(str, unknown))}")
        exposures = exposures[exposures["variation_key"].isin(variation_keys)]

    if not conversions.empty:
        conversions = conversions[conversions["experiment_key"] == key].copy()
        conversions["value"] = pd.to_numeric(conversions["value"], errors="coerce")
        if not exposures.empty:
            exposed_pairs = exposures[["user_id", "variation_key"]].drop_duplicates()
            matched = conversions.merge(exposed_pairs, on=["user_id", "variation_key"], how="inner")
        else:
            matched = conversions.iloc[0:0]
        orphaned = len(conversions) - len(matched)
        if orphaned:
            results.warnings.append(f"{orphaned} conversion events without a matching exposure ignored")
        conversions = matched

    participants: Dict[str, pd.Index] = {}
    for vkey in variation_keys:
        if exposures.empty:
            participants[vkey] = pd.Index([], dtype=object)
        else:
            participants[vkey] = pd.Index(exposures.loc[exposures["variation_key"] == vkey, "user_id"].unique())

    primary = experiment.primary_metric
    for vkey in variation_keys:
        variation = experiment.get_variation(vkey)
        n_exposures = 0 if exposures.empty else int((exposures["variation_key"] == vkey).sum())
        converted = 0
        if primary is not None and not conversions.empty:
            mask = (conversions["variation_key"] == vkey) & (conversions["metric_id"] == primary.id)
            converted = int(conversions.loc[mask, "user_id"].nunique())
        n = len(participants[vkey])
        results.variations.append(VariationResult(
            variation_key=vkey,
            participants=n,
            exposures=n_exposures,
            conversions=converted,
            conversion_rate=converted / n if n > 0 else 0.0,
            is_control=variation.is_control or vkey == experiment.control_variation,
        ))

    control = next((v for v in results.variations if v.is_control), None)
    if control is not None and control.conversion_rate > 0:
        for v in results.variations:
            if not v.is_control:
                v.relative_lift = (v.conversion_rate - control.conversion_rate) / control.conversion_rate

    empty_events = pd.DataFrame(columns=["user_id", "value"])
    for metric in experiment.metrics:
        for vkey in variation_keys:
            if conversions.empty:
                events = empty_events
            else:
                mask = (conversions["variation_key"] == vkey) & (conversions["metric_id"] == metric.id)
                events = conversions.loc[mask]
            results.metrics.append(_metric_result(metric, vkey, participants[vkey], events))

    results.total_participants = int(exposures["user_id"].nunique()) if not exposures.empty else 0
    results.total_conversions = sum(v.conversions for v in results.variations)

    minimum = experiment.minimum_sample_size or DEFAULT_MINIMUM_SAMPLE_SIZE
    short = [v for v in results.variations if v.participants < minimum]
    if short or not results.variations:
        results.status = ResultStatus.COLLECTING
        for v in short:
            results.warnings.append(
                f"variation '{v.variation_key}' has {v.participants} participants (minimum {minimum})"
            )
    else:
        results.status = ResultStatus.INCONCLUSIVE
    return results


def load_flag_stats(
    platform: str,
    environment: str,
    flag_key: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    data_dir: str = DEFAULT_STORE_DIR,
) -> FlagStats:
    """Read a flag's evaluations from the event store and aggregate them."""
    evaluations = read_flag_evaluations(platform, environment, flag_key, start_date, end_date, base_dir=data_dir)
    return compute_flag_stats(flag_key, evaluations)


def run_analysis(
    experiment: Experiment,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    data_dir: str = DEFAULT_STORE_DIR,
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR,
) -> ExperimentResults:
    """
    Aggregate an experiment from the event store and save the results.

    Args:
        experiment: Experiment definition
        start_date: Start of analysis window
        end_date: End of analysis window
        data_dir: Base event store directory
        artifacts_dir: Base artifacts directory

    Returns:
        ExperimentResults
    """
    key = experiment.experiment_key
    exposures = read_exposures(
        experiment.platform, experiment.environment, key, start_date, end_date, base_dir=data_dir
    )
    conversions = read_conversions(
        experiment.platform, experiment.environment, key,
        start_date=start_date, end_date=end_date, base_dir=data_dir,
    )
    if exposures.empty:
        logger.warning(f"No exposure data for experiment {key}")

    results = compute_experiment_results(experiment, exposures, conversions)

    out_dir = Path(artifacts_dir) / key
    out_dir.mkdir(parents=True, exist_ok=True)
    with open(out_dir / "results.json", "w") as f:
        json.dump(results.to_dict(), f, indent=2)

    var_df = pd.DataFrame([
        {
            "variation_key": v.variation_key,
            "is_control": v.is_control,
            "participants": v.participants,
            "exposures": v.exposures,
            "conversions": v.conversions,
            "conversion_rate": v.conversion_rate,
            "relative_lift": v.relative_lift,
        }
        for v in results.variations
    ])
    var_df.to_csv(out_dir / "variations.csv", index=False)

    logger.info(f"Results for {key} ({results.status.value}) saved to {out_dir}")
    return results


def summarize_variations(results: ExperimentResults) -> List[str]:
    """One human-readable line per variation, for CLI output."""
    lines = []
    for v in results.variations:
        lift = f"{v.relative_lift:+.1%}" if v.relative_lift is not None else "-"
        tag = " (control)" if v.is_control else ""
        lines.append(
            f"{v.variation_key}{tag}: n={v.participants} conv={v.conversions} "
            f"rate={v.conversion_rate:.2%} lift={lift}"
        )
    return lines
