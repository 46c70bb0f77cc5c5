"""
Write-time integrity checks for flags, experiments and config parameters.

Evaluation never calls these; they guard the write path so malformed
definitions do not reach the resolver or the assignor. Each validator
collects every problem before raising a single ValidationError.
"""

import re
from typing import List, Optional

from .exceptions import ValidationError
from .schema import ConfigParameter, Experiment, Flag, Targeting, ValueType

FLAG_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
VARIATION_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
PARAMETER_KEY_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_.-]*$")
COUNTRY_PATTERN = re.compile(r"^[A-Za-z]{2}$")
LANGUAGE_PATTERN = re.compile(r"^[A-Za-z]{2,3}$")

MAX_KEY_LENGTH = 256
MAX_CONFIG_VALUE_LENGTH = 10000
TRAFFIC_TOLERANCE = 0.01


def _raise_if(problems: List[str], what: str) -> None:
    if problems:
        raise ValidationError(f"invalid {what}: {len(problems)} problem(s)", problems)


def _check_percentage(name: str, value: float, problems: List[str]) -> None:
    if not 0 <= value <= 100:
        problems.append(f"{name}: must be between 0 and 100, got {value}")


def _check_targeting(targeting: Targeting, problems: List[str]) -> None:
    for country in targeting.countries:
        if not COUNTRY_PATTERN.match(country.country or ""):
            problems.append(f"targeting.countries: invalid country code '{country.country}'")
        for language in country.languages or []:
            if not LANGUAGE_PATTERN.match(language.language or ""):
                problems.append(
                    f"targeting.countries[{country.country}].languages: "
                    f"invalid language code '{language.language}'"
                )


def validate_flag(flag: Flag) -> None:
    """
    Check a flag definition before it is stored.

    Raises:
        ValidationError: with one entry in ``details`` per problem
    """
    problems: List[str] = []
    if not FLAG_KEY_PATTERN.match(flag.flag_key or ""):
        problems.append(
            f"flagKey: '{flag.flag_key}' must start with a lowercase letter and contain "
            f"only lowercase letters, digits, '_' or '-'"
        )
    elif len(flag.flag_key) > MAX_KEY_LENGTH:
        problems.append(f"flagKey: longer than {MAX_KEY_LENGTH} characters")
    if not flag.platform:
        problems.append("platform: required")
    if not flag.environment:
        problems.append("environment: required")

    for name, value in (("valueA", flag.value_a), ("valueB", flag.value_b)):
        if value.type is not flag.flag_type or not value.matches_type():
            problems.append(f"{name}: expected {flag.flag_type.value}, got {value.value!r}")

    _check_percentage("rolloutPercentageA", flag.rollout_percentage_a, problems)
    _check_percentage("rolloutPercentageB", flag.rollout_percentage_b, problems)
    _check_targeting(flag.targeting, problems)
    _raise_if(problems, f"flag '{flag.flag_key}'")


def validate_rollout_update(
    rollout_percentage_a: Optional[float] = None,
    rollout_percentage_b: Optional[float] = None,
) -> None:
    """Both percentages given together must add up to 100."""
    problems: List[str] = []
    if rollout_percentage_a is not None:
        _check_percentage("rolloutPercentageA", rollout_percentage_a, problems)
    if rollout_percentage_b is not None:
        _check_percentage("rolloutPercentageB", rollout_percentage_b, problems)
    if rollout_percentage_a is not None and rollout_percentage_b is not None:
        total = rollout_percentage_a + rollout_percentage_b
        if abs(total - 100) > TRAFFIC_TOLERANCE:
            problems.append(f"rollout percentages must sum to 100, got {total}")
    _raise_if(problems, "rollout update")


def validate_experiment(experiment: Experiment) -> None:
    """
    Check an experiment definition before it is stored.

    Raises:
        ValidationError: with one entry in ``details`` per problem
    """
    problems: List[str] = []
    if not FLAG_KEY_PATTERN.match(experiment.experiment_key or ""):
        problems.append(f"experimentKey: '{experiment.experiment_key}' is not a valid key")

    variations = experiment.variations
    if len(variations) < 2:
        problems.append(f"variations: at least 2 required, got {len(variations)}")

    keys = [v.key for v in variations]
    duplicates = sorted({k for k in keys if keys.count(k) > 1})
    for key in duplicates:
        problems.append(f"variations: duplicate key '{key}'")
    for key in keys:
        if not VARIATION_KEY_PATTERN.match(key or ""):
            problems.append(f"variations: invalid key '{key}'")

    controls = [v.key for v in variations if v.is_control]
    if len(controls) != 1:
        problems.append(f"variations: exactly one control required, got {len(controls)}")
    elif controls[0] != experiment.control_variation:
        problems.append(
            f"controlVariation: '{experiment.control_variation}' does not match "
            f"control variation '{controls[0]}'"
        )

    for allocation in experiment.traffic_allocation:
        if allocation.variation_key not in keys:
            problems.append(f"trafficAllocation: unknown variation '{allocation.variation_key}'")
        _check_percentage(
            f"trafficAllocation[{allocation.variation_key}]", allocation.percentage, problems
        )
    total = sum(a.percentage for a in experiment.traffic_allocation)
    if abs(total - 100) > TRAFFIC_TOLERANCE:
        problems.append(f"trafficAllocation: must sum to 100, got {total}")

    if not 0 < experiment.confidence_level < 1:
        problems.append(
            f"confidenceLevel: must be between 0 and 1 (exclusive), got {experiment.confidence_level}"
        )
    if experiment.primary_metric is None:
        problems.append("primaryMetric: required")

    _check_targeting(experiment.targeting, problems)
    _raise_if(problems, f"experiment '{experiment.experiment_key}'")


def validate_config_parameter(parameter: ConfigParameter) -> None:
    """Check a config parameter's key and that its stored string parses as its value type."""
    problems: List[str] = []
    key = parameter.parameter_key or ""
    if not PARAMETER_KEY_PATTERN.match(key):
        problems.append(f"parameterKey: '{key}' is not a valid key")
    if len(key) > MAX_KEY_LENGTH:
        problems.append(f"parameterKey: longer than {MAX_KEY_LENGTH} characters")
    if len(parameter.default_value) > MAX_CONFIG_VALUE_LENGTH:
        problems.append(f"defaultValue: longer than {MAX_CONFIG_VALUE_LENGTH} characters")
    try:
        parameter.parsed_value()
    except ValueError as e:
        # json.JSONDecodeError is a ValueError subclass
        problems.append(f"defaultValue: not a valid {ValueType(parameter.value_type).value}: {e}")
    _raise_if(problems, f"config parameter '{key}'")
