"""
Experiment status state machine and edit/delete rules.

    draft -> running -> {paused <-> running} -> completed -> archived

Every transition returns a new Experiment; inputs are never mutated.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from .exceptions import InvalidTransitionError, ValidationError
from .schema import Experiment, ExperimentStatus, TrafficAllocation, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[ExperimentStatus, FrozenSet[ExperimentStatus]] = {
    ExperimentStatus.DRAFT: frozenset({ExperimentStatus.RUNNING}),
    ExperimentStatus.RUNNING: frozenset({ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED}),
    ExperimentStatus.PAUSED: frozenset({ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED}),
    ExperimentStatus.COMPLETED: frozenset({ExperimentStatus.ARCHIVED}),
    ExperimentStatus.ARCHIVED: frozenset(),
}

# Fields that may change while an experiment is live.
_LIVE_EDITABLE = {"traffic_allocation", "updated_at"}


def can_transition(current: ExperimentStatus, target: ExperimentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(ExperimentStatus(current), frozenset())


def transition(
    experiment: Experiment,
    target: ExperimentStatus,
    winner: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Experiment:
    """
    Move an experiment to a new status.

    Args:
        experiment: Current definition
        target: Status to move to
        winner: Winning variation key; only allowed when completing
        now: Timestamp to stamp (defaults to current UTC time)

    Returns:
        Updated copy of the experiment

    Raises:
        InvalidTransitionError: if the move is not allowed from the current status
        ValidationError: if ``winner`` is not one of the experiment's variations
    """
    target = ExperimentStatus(target)
    current = experiment.status
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
    if winner is not None:
        if target is not ExperimentStatus.COMPLETED:
            raise InvalidTransitionError(
                current.value, target.value, "a winner can only be set when completing an experiment"
            )
        if experiment.get_variation(winner) is None:
            raise ValidationError(
                f"winner '{winner}' is not a variation of {experiment.experiment_key}",
                [f"winner: unknown variation '{winner}'"],
            )

    now = now or utcnow()
    changes = {"status": target, "updated_at": now}
    if target is ExperimentStatus.RUNNING and experiment.started_at is None:
        changes["started_at"] = now
    if target is ExperimentStatus.COMPLETED:
        changes["completed_at"] = now
        changes["winner"] = winner

    logger.info(f"Experiment {experiment.experiment_key}: {current.value} -> {target.value}")
    return replace(experiment, **changes)


def start(experiment: Experiment, now: Optional[datetime] = None) -> Experiment:
    if experiment.status is not ExperimentStatus.DRAFT:
        raise InvalidTransitionError(
            experiment.status.value, ExperimentStatus.RUNNING.value,
            f"cannot start experiment in {experiment.status.value} status",
        )
    return transition(experiment, ExperimentStatus.RUNNING, now=now)


def pause(experiment: Experiment, now: Optional[datetime] = None) -> Experiment:
    return transition(experiment, ExperimentStatus.PAUSED, now=now)


def resume(experiment: Experiment, now: Optional[datetime] = None) -> Experiment:
    if experiment.status is not ExperimentStatus.PAUSED:
        raise InvalidTransitionError(
            experiment.status.value, ExperimentStatus.RUNNING.value,
            f"cannot resume experiment in {experiment.status.value} status",
        )
    return transition(experiment, ExperimentStatus.RUNNING, now=now)


def complete(
    experiment: Experiment,
    winner: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Experiment:
    return transition(experiment, ExperimentStatus.COMPLETED, winner=winner, now=now)


def archive(experiment: Experiment, now: Optional[datetime] = None) -> Experiment:
    return transition(experiment, ExperimentStatus.ARCHIVED, now=now)


def _changed_fields(current: Experiment, proposed: Experiment) -> List[str]:
    changed = []
    for name in current.__dataclass_fields__:
        if getattr(current, name) != getattr(proposed, name):
            changed.append(name)
    return changed


def check_update_allowed(current: Experiment, proposed: Experiment) -> None:
    """
    Check that an in-place edit is allowed for the current status.

    Draft experiments may change freely. Running and paused experiments may
    only change their traffic allocation. Completed and archived experiments
    are read-only. Status changes go through ``transition``.

    Raises:
        ValidationError: listing the fields that may not change
    """
    changed = _changed_fields(current, proposed)
    if "status" in changed:
        raise ValidationError(
            "status must be changed through a lifecycle transition", ["status"]
        )
    identity = [f for f in ("platform", "environment", "experiment_key") if f in changed]
    if identity:
        raise ValidationError("experiment identity cannot change", identity)

    status = current.status
    if status is ExperimentStatus.DRAFT:
        return
    if status in (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED):
        blocked = [f for f in changed if f not in _LIVE_EDITABLE]
        if blocked:
            raise ValidationError(
                f"only traffic allocation can be changed while {status.value}", blocked
            )
        return
    if changed:
        raise ValidationError(f"{status.value} experiments cannot be edited", changed)


def update_traffic(
    experiment: Experiment,
    allocation: List[TrafficAllocation],
    now: Optional[datetime] = None,
) -> Experiment:
    """
    Replace the traffic allocation of a draft, running or paused experiment.

    Re-balancing reshuffles users whose score falls in a moved boundary.
    """
    if experiment.status not in (ExperimentStatus.DRAFT, ExperimentStatus.RUNNING, ExperimentStatus.PAUSED):
        raise ValidationError(
            f"cannot update traffic of a {experiment.status.value} experiment",
            ["traffic_allocation"],
        )
    unknown = [a.variation_key for a in allocation if experiment.get_variation(a.variation_key) is None]
    if unknown:
        raise ValidationError(
            "traffic allocation references unknown variations",
            [f"trafficAllocation: unknown variation '{key}'" for key in unknown],
        )
    total = sum(a.percentage for a in allocation)
    if abs(total - 100.0) > 0.01:
        raise ValidationError(
            f"traffic allocation must sum to 100, got {total}",
            [f"trafficAllocation: sums to {total}"],
        )
    logger.info(f"Experiment {experiment.experiment_key}: traffic allocation updated")
    return replace(experiment, traffic_allocation=list(allocation), updated_at=now or utcnow())


def can_delete(experiment: Experiment, force: bool = False) -> bool:
    """Only drafts can be deleted, unless an administrator forces it."""
    return force or experiment.status is ExperimentStatus.DRAFT
