"""
Tier 2 flag targeting resolver.

Resolves which of a flag's two values a user receives. Precedence, first
match wins: kill switch, force-exclude, country/language rule, percentage
rollout, default. Force-include marks the user as eligible but does not
pick a value on its own.
"""

import logging
from typing import Dict, Iterable, Optional

from .exceptions import ValidationError
from .hashing import bucket
from .recording import StatsSink
from .schema import (
    EvaluationContext,
    Flag,
    FlagEvaluationResult,
    ServedValue,
    ValueType,
)

logger = logging.getLogger(__name__)


class EvaluationReason:
    """Reason strings returned with every flag evaluation."""
    FLAG_DISABLED = "flag disabled"
    FORCE_EXCLUDED = "user force-excluded"
    FORCE_INCLUDED_PREFIX = "force-included, "
    TARGETING_MATCH = "matched country/language targeting rule for {country}"
    ROLLOUT = "rollout applied"
    ROLLOUT_GAP = "rollout gap, default served"
    DEFAULT = "default value"


def _result(flag: Flag, served: ServedValue, reason: str) -> FlagEvaluationResult:
    return FlagEvaluationResult(
        flag_key=flag.flag_key,
        value=flag.value_for(served),
        served_value=served,
        reason=reason,
    )


def evaluate_flag(flag: Flag, context: EvaluationContext) -> FlagEvaluationResult:
    """
    Resolve a flag for one user context.

    Pure and total: identical (flag, context) always yields an identical result.

    Args:
        flag: Flag definition (active version)
        context: User id, country and language of the caller

    Returns:
        FlagEvaluationResult with the served letter, its value and a reason
    """
    user_id = context.effective_user_id
    targeting = flag.targeting

    if not flag.enabled:
        return _result(flag, flag.default_value, EvaluationReason.FLAG_DISABLED)

    if user_id in targeting.force_exclude_users:
        return _result(flag, flag.default_value, EvaluationReason.FORCE_EXCLUDED)

    prefix = ""
    if user_id in targeting.force_include_users:
        prefix = EvaluationReason.FORCE_INCLUDED_PREFIX

    country_target = targeting.find_country(context.country)
    if country_target is not None:
        served = country_target.serve_value
        language_target = country_target.find_language(context.language)
        if language_target is not None and language_target.serve_value is not None:
            served = language_target.serve_value
        if served is not None:
            reason = EvaluationReason.TARGETING_MATCH.format(country=country_target.country)
            return _result(flag, served, prefix + reason)

    if flag.rollout_enabled:
        score = bucket(flag.flag_key, user_id)
        threshold_a = flag.rollout_percentage_a
        if score < threshold_a:
            return _result(flag, ServedValue.A, prefix + EvaluationReason.ROLLOUT)
        if score < threshold_a + flag.rollout_percentage_b:
            return _result(flag, ServedValue.B, prefix + EvaluationReason.ROLLOUT)
        return _result(flag, flag.default_value, prefix + EvaluationReason.ROLLOUT_GAP)

    return _result(flag, flag.default_value, prefix + EvaluationReason.DEFAULT)


def evaluate_flags(
    flags: Iterable[Flag],
    context: EvaluationContext,
) -> Dict[str, FlagEvaluationResult]:
    """Evaluate several flags for the same context, keyed by flag key."""
    return {flag.flag_key: evaluate_flag(flag, context) for flag in flags}


def is_enabled(flag: Flag, context: EvaluationContext) -> bool:
    """
    Convenience check for boolean flags.

    Raises:
        ValidationError: if the flag is not a boolean flag
    """
    if flag.flag_type is not ValueType.BOOLEAN:
        raise ValidationError(
            f"is_enabled() can only be used with boolean flags; "
            f"'{flag.flag_key}' is type '{flag.flag_type.value}'"
        )
    return evaluate_flag(flag, context).value.value is True


def evaluate_flag_with_tracking(
    flag: Flag,
    context: EvaluationContext,
    sink: Optional[StatsSink] = None,
) -> FlagEvaluationResult:
    """
    Evaluate a flag and report the evaluation to a stats sink.

    Recording is fire-and-forget: sink failures are logged, never raised.
    """
    result = evaluate_flag(flag, context)
    logger.debug(
        f"Flag {flag.flag_key} -> {result.served_value.value} for "
        f"{context.effective_user_id} ({result.reason})"
    )
    if sink is not None and context.user_id:
        try:
            sink.track_flag_evaluation(
                flag.flag_key,
                result.served_value,
                context.user_id,
                context.country,
                context.language,
            )
        except Exception as e:
            logger.warning(f"Failed to track evaluation of flag {flag.flag_key}: {e}")
    return result
