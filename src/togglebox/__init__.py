"""ToggleBox evaluation engine: remote config, feature flags and experiments."""

from .schema import (
    ConfigParameter,
    EvaluationContext,
    Experiment,
    ExperimentContext,
    ExperimentResults,
    ExperimentStatus,
    Flag,
    FlagEvaluationResult,
    FlagStats,
    FlagValue,
    ServedValue,
    ValueType,
    VariantAssignment,
)
from .exceptions import (
    ConfigurationError,
    FetchCancelledError,
    InvalidDefinitionError,
    InvalidTransitionError,
    NetworkError,
    NotFoundError,
    ToggleBoxError,
    ValidationError,
)
from .hashing import bucket, hash_string
from .flags import evaluate_flag, evaluate_flags, evaluate_flag_with_tracking, is_enabled
from .assignment import assign_variation, assign_experiments, assign_variation_with_tracking
from .recording import NullStatsSink, StatsReporter, StatsSink
from .analyze import compute_experiment_results, compute_flag_stats, run_analysis
from .client import ClientEvent, ClientOptions, RefreshResult, ToggleBoxClient

__all__ = [
    "ConfigParameter",
    "EvaluationContext",
    "Experiment",
    "ExperimentContext",
    "ExperimentResults",
    "ExperimentStatus",
    "Flag",
    "FlagEvaluationResult",
    "FlagStats",
    "FlagValue",
    "ServedValue",
    "ValueType",
    "VariantAssignment",
    "ConfigurationError",
    "FetchCancelledError",
    "InvalidDefinitionError",
    "InvalidTransitionError",
    "NetworkError",
    "NotFoundError",
    "ToggleBoxError",
    "ValidationError",
    "bucket",
    "hash_string",
    "evaluate_flag",
    "evaluate_flags",
    "evaluate_flag_with_tracking",
    "is_enabled",
    "assign_variation",
    "assign_experiments",
    "assign_variation_with_tracking",
    "NullStatsSink",
    "StatsReporter",
    "StatsSink",
    "compute_experiment_results",
    "compute_flag_stats",
    "run_analysis",
    "ClientEvent",
    "ClientOptions",
    "RefreshResult",
    "ToggleBoxClient",
]
