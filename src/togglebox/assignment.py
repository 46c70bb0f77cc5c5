"""
Deterministic experiment variation assignment.

Hashes (experiment_key, user_id) into a score in [0, 100) and walks the
traffic allocation in definition order, so assignment is sticky without a
persisted per-user table. Users falling past the last cumulative boundary
are left out of the experiment.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, Optional

from .hashing import bucket
from .recording import StatsSink
from .schema import (
    Experiment,
    ExperimentContext,
    ExperimentStatus,
    VariantAssignment,
    utcnow,
)

logger = logging.getLogger(__name__)

# Paused experiments keep serving already-bucketed users identically but record no exposures.
ASSIGNABLE_STATUSES = (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED)


class AssignmentReason:
    """Reason strings for assignment decisions."""
    NOT_RUNNING = "experiment is not running"
    NOT_STARTED = "experiment has not started yet (scheduled start in future)"
    ENDED = "experiment has ended (scheduled end passed)"
    FORCE_EXCLUDED = "user is in force exclude list"
    NOT_IN_TARGET = "user does not match targeting criteria"
    TRAFFIC_GAP = "traffic allocation gap"
    HASH_ASSIGNMENT = (
        "assigned via consistent hash: score {score:.2f} < cumulative {upper:.2f} "
        "(range {lower:.2f}-{upper:.2f})"
    )
    FORCE_INCLUDED_PREFIX = "force-included, "


def _matches_targeting(experiment: Experiment, context: ExperimentContext) -> bool:
    targeting = experiment.targeting
    if not targeting.countries:
        return True
    country_target = targeting.find_country(context.country)
    if country_target is None:
        return False
    if country_target.languages:
        return country_target.find_language(context.language) is not None
    return True


def ineligibility_reason(
    experiment: Experiment,
    context: ExperimentContext,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Return why the user is kept out of the experiment, or None if eligible."""
    if experiment.status not in ASSIGNABLE_STATUSES:
        return AssignmentReason.NOT_RUNNING

    now = now or utcnow()
    if experiment.scheduled_start_at and experiment.scheduled_start_at > now:
        return AssignmentReason.NOT_STARTED
    if experiment.scheduled_end_at and experiment.scheduled_end_at < now:
        return AssignmentReason.ENDED

    user_id = context.effective_user_id
    targeting = experiment.targeting
    if user_id in targeting.force_exclude_users:
        return AssignmentReason.FORCE_EXCLUDED
    if user_id in targeting.force_include_users:
        return None
    if not _matches_targeting(experiment, context):
        return AssignmentReason.NOT_IN_TARGET
    return None


def assign_variation(
    experiment: Experiment,
    context: ExperimentContext,
    now: Optional[datetime] = None,
) -> Optional[VariantAssignment]:
    """
    Assign a user to one of an experiment's variations.

    Args:
        experiment: Experiment definition
        context: User id, country and language
        now: Clock used for scheduled start/end checks (defaults to current UTC time)

    Returns:
        VariantAssignment, or None when the user is not in the experiment
    """
    reason = ineligibility_reason(experiment, context, now)
    if reason is not None:
        logger.debug(f"{experiment.experiment_key}: {context.effective_user_id} not assigned ({reason})")
        return None

    user_id = context.effective_user_id
    score = bucket(experiment.experiment_key, user_id)

    cumulative = 0.0
    for allocation in experiment.traffic_allocation:
        lower = cumulative
        cumulative += max(allocation.percentage, 0.0)
        if score < cumulative:
            variation = experiment.get_variation(allocation.variation_key)
            if variation is None:
                logger.warning(
                    f"{experiment.experiment_key}: traffic allocation references "
                    f"unknown variation '{allocation.variation_key}'"
                )
                return None
            why = AssignmentReason.HASH_ASSIGNMENT.format(score=score, lower=lower, upper=cumulative)
            if user_id in experiment.targeting.force_include_users:
                why = AssignmentReason.FORCE_INCLUDED_PREFIX + why
            return VariantAssignment(
                experiment_key=experiment.experiment_key,
                variation_key=variation.key,
                value=variation.value,
                is_control=variation.is_control or variation.key == experiment.control_variation,
                reason=why,
            )

    logger.debug(
        f"{experiment.experiment_key}: {user_id} score {score:.2f} beyond allocated "
        f"{cumulative:.2f} ({AssignmentReason.TRAFFIC_GAP})"
    )
    return None


def assign_experiments(
    experiments: Iterable[Experiment],
    context: ExperimentContext,
    now: Optional[datetime] = None,
) -> Dict[str, VariantAssignment]:
    """Assign a user across several experiments; only experiments the user is in are returned."""
    assignments = {}
    for experiment in experiments:
        assignment = assign_variation(experiment, context, now)
        if assignment is not None:
            assignments[experiment.experiment_key] = assignment
    return assignments


def is_in_variation(
    experiment: Experiment,
    context: ExperimentContext,
    variation_key: str,
    now: Optional[datetime] = None,
) -> bool:
    assignment = assign_variation(experiment, context, now)
    return assignment is not None and assignment.variation_key == variation_key


def preview_assignment(
    experiment: Experiment,
    context: ExperimentContext,
    now: Optional[datetime] = None,
) -> Optional[VariantAssignment]:
    """What the user would get, without recording an exposure."""
    return assign_variation(experiment, context, now)


def assign_variation_with_tracking(
    experiment: Experiment,
    context: ExperimentContext,
    sink: Optional[StatsSink] = None,
    now: Optional[datetime] = None,
) -> Optional[VariantAssignment]:
    """
    Assign and report exactly one exposure per non-null assignment.

    Paused experiments still return the assignment but record nothing, so
    paused traffic never reaches the aggregated results. No deduplication
    happens here; the sink owns that. Sink failures are logged and swallowed.
    """
    assignment = assign_variation(experiment, context, now)
    if assignment is not None and experiment.status is ExperimentStatus.PAUSED:
        logger.debug(f"{experiment.experiment_key} is paused; exposure not recorded")
        return assignment
    if assignment is not None and sink is not None:
        try:
            sink.track_experiment_exposure(
                assignment.experiment_key,
                assignment.variation_key,
                context.effective_user_id,
            )
        except Exception as e:
            logger.warning(f"Failed to track exposure for {experiment.experiment_key}: {e}")
    return assignment
