"""
Data models for the three ToggleBox tiers.

Dataclass schemas for remote config parameters, feature flags, experiments,
evaluation/assignment results, stats events and aggregated results.
Definitions round-trip through ``from_dict``/``to_dict`` using the camelCase
field names the SDKs exchange on the wire; stats events only serialize.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

ANONYMOUS_USER_ID = "anonymous"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed). Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def _drop_none(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


def _get(data: Dict[str, Any], key: str, default: Any) -> Any:
    """Like ``dict.get`` but an explicit JSON null also falls back to ``default``."""
    value = data.get(key)
    return default if value is None else value


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


class ServedValue(str, Enum):
    """Which of a flag's two values was served."""
    A = "A"
    B = "B"


class ValueType(str, Enum):
    """Type tag carried alongside every flag, variation and config value."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"


@dataclass(frozen=True)
class FlagValue:
    """Tagged value: the raw Python value plus its explicit type tag."""
    type: ValueType
    value: Any

    @classmethod
    def of(cls, raw: Any, value_type: Optional[ValueType] = None) -> "FlagValue":
        """Wrap a raw wire value, inferring the tag when none is given."""
        if isinstance(raw, FlagValue):
            return raw
        if value_type is not None:
            return cls(ValueType(value_type), raw)
        # bool before int: bool is an int subclass
        if isinstance(raw, bool):
            return cls(ValueType.BOOLEAN, raw)
        if isinstance(raw, (int, float)):
            return cls(ValueType.NUMBER, raw)
        if isinstance(raw, str):
            return cls(ValueType.STRING, raw)
        return cls(ValueType.JSON, raw)

    def matches_type(self) -> bool:
        if self.type is ValueType.BOOLEAN:
            return isinstance(self.value, bool)
        if self.type is ValueType.NUMBER:
            return isinstance(self.value, (int, float)) and not isinstance(self.value, bool)
        if self.type is ValueType.STRING:
            return isinstance(self.value, str)
        return True

    def to_json(self) -> Any:
        return self.value


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EvaluationContext:
    """Who is being evaluated. Immutable for the duration of one call."""
    user_id: Optional[str] = None
    country: Optional[str] = None  # ISO-3166 alpha-2
    language: Optional[str] = None  # ISO-639 2-3 letters

    @property
    def effective_user_id(self) -> str:
        return self.user_id or ANONYMOUS_USER_ID

    def merged(self, override: Optional["EvaluationContext"]) -> "EvaluationContext":
        """Resolve this base context against a per-call override; override wins per field."""
        if override is None:
            return self
        return EvaluationContext(
            user_id=override.user_id if override.user_id is not None else self.user_id,
            country=override.country if override.country is not None else self.country,
            language=override.language if override.language is not None else self.language,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvaluationContext":
        return cls(
            user_id=data.get("userId"),
            country=data.get("country"),
            language=data.get("language"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "userId": self.user_id,
            "country": self.country,
            "language": self.language,
        })


# Experiments are evaluated against the same context shape.
ExperimentContext = EvaluationContext


# ---------------------------------------------------------------------------
# Targeting
# ---------------------------------------------------------------------------


@dataclass
class LanguageTarget:
    language: str
    serve_value: Optional[ServedValue] = None  # absent for experiments

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LanguageTarget":
        serve = data.get("serveValue")
        return cls(
            language=data["language"],
            serve_value=ServedValue(serve) if serve is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "language": self.language,
            "serveValue": self.serve_value.value if self.serve_value else None,
        })


@dataclass
class CountryTarget:
    country: str
    serve_value: Optional[ServedValue] = None  # absent for experiments
    languages: Optional[List[LanguageTarget]] = None

    def find_language(self, language: Optional[str]) -> Optional[LanguageTarget]:
        if not language or not self.languages:
            return None
        wanted = language.lower()
        for target in self.languages:
            if target.language.lower() == wanted:
                return target
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CountryTarget":
        serve = data.get("serveValue")
        languages = data.get("languages")
        return cls(
            country=data["country"],
            serve_value=ServedValue(serve) if serve is not None else None,
            languages=[LanguageTarget.from_dict(lang) for lang in languages]
            if languages is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"country": self.country}
        if self.serve_value is not None:
            d["serveValue"] = self.serve_value.value
        if self.languages is not None:
            d["languages"] = [lang.to_dict() for lang in self.languages]
        return d


@dataclass
class Targeting:
    """Country/language hierarchy plus forced include/exclude user lists."""
    countries: List[CountryTarget] = field(default_factory=list)
    force_include_users: List[str] = field(default_factory=list)
    force_exclude_users: List[str] = field(default_factory=list)

    def find_country(self, country: Optional[str]) -> Optional[CountryTarget]:
        if not country:
            return None
        wanted = country.upper()
        for target in self.countries:
            if target.country.upper() == wanted:
                return target
        return None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Targeting":
        data = data or {}
        return cls(
            countries=[CountryTarget.from_dict(c) for c in data.get("countries") or []],
            force_include_users=list(data.get("forceIncludeUsers") or []),
            force_exclude_users=list(data.get("forceExcludeUsers") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "countries": [c.to_dict() for c in self.countries],
            "forceIncludeUsers": list(self.force_include_users),
            "forceExcludeUsers": list(self.force_exclude_users),
        }


# ---------------------------------------------------------------------------
# Tier 1: remote config
# ---------------------------------------------------------------------------


@dataclass
class ConfigParameter:
    """A single remote config parameter. Values are stored as strings."""
    platform: str
    environment: str
    parameter_key: str
    value_type: ValueType
    default_value: str
    version: str = "1"
    description: str = ""
    parameter_group: Optional[str] = None
    is_active: bool = True
    created_by: str = ""
    created_at: Optional[datetime] = None

    def parsed_value(self) -> Any:
        """Convert the stored string to its typed value. Raises ValueError if it does not parse."""
        raw = self.default_value
        if self.value_type is ValueType.STRING:
            return raw
        if self.value_type is ValueType.NUMBER:
            number = float(raw)
            if number != number or number in (float("inf"), float("-inf")):
                raise ValueError(f"not a finite number: {raw!r}")
            if number.is_integer() and all(c not in raw for c in ".eE"):
                return int(number)
            return number
        if self.value_type is ValueType.BOOLEAN:
            lowered = raw.strip().lower()
            if lowered not in ("true", "false"):
                raise ValueError(f"not a boolean: {raw!r}")
            return lowered == "true"
        return json.loads(raw)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigParameter":
        return cls(
            platform=data["platform"],
            environment=data["environment"],
            parameter_key=data["parameterKey"],
            value_type=ValueType(_get(data, "valueType", "string")),
            default_value=str(_get(data, "defaultValue", "")),
            version=str(_get(data, "version", "1")),
            description=data.get("description") or "",
            parameter_group=data.get("parameterGroup"),
            is_active=_get(data, "isActive", True),
            created_by=_get(data, "createdBy", ""),
            created_at=parse_datetime(data.get("createdAt")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "platform": self.platform,
            "environment": self.environment,
            "parameterKey": self.parameter_key,
            "version": self.version,
            "valueType": self.value_type.value,
            "defaultValue": self.default_value,
            "description": self.description or None,
            "parameterGroup": self.parameter_group,
            "isActive": self.is_active,
            "createdBy": self.created_by or None,
            "createdAt": format_datetime(self.created_at),
        })


# ---------------------------------------------------------------------------
# Tier 2: feature flags
# ---------------------------------------------------------------------------


@dataclass
class Flag:
    """Two-valued feature flag with targeting and percentage rollout."""
    platform: str
    environment: str
    flag_key: str
    value_a: FlagValue = field(default_factory=lambda: FlagValue(ValueType.BOOLEAN, True))
    value_b: FlagValue = field(default_factory=lambda: FlagValue(ValueType.BOOLEAN, False))
    flag_type: ValueType = ValueType.BOOLEAN
    enabled: bool = False  # kill switch: False = always serve default_value
    name: str = ""
    description: str = ""
    targeting: Targeting = field(default_factory=Targeting)
    default_value: ServedValue = ServedValue.B
    rollout_enabled: bool = False
    rollout_percentage_a: float = 100.0
    rollout_percentage_b: float = 0.0
    version: str = "1.0.0"
    is_active: bool = True
    created_by: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def value_for(self, served: ServedValue) -> FlagValue:
        return self.value_a if served is ServedValue.A else self.value_b

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Flag":
        flag_type = ValueType(_get(data, "flagType", "boolean"))
        value_a = _get(data, "valueA", True if flag_type is ValueType.BOOLEAN else None)
        value_b = _get(data, "valueB", False if flag_type is ValueType.BOOLEAN else None)
        return cls(
            platform=data["platform"],
            environment=data["environment"],
            flag_key=data["flagKey"],
            name=_get(data, "name", ""),
            description=data.get("description") or "",
            enabled=bool(_get(data, "enabled", False)),
            flag_type=flag_type,
            value_a=FlagValue.of(value_a, flag_type),
            value_b=FlagValue.of(value_b, flag_type),
            targeting=Targeting.from_dict(data.get("targeting")),
            default_value=ServedValue(_get(data, "defaultValue", "B")),
            rollout_enabled=bool(_get(data, "rolloutEnabled", False)),
            rollout_percentage_a=float(_get(data, "rolloutPercentageA", 100)),
            rollout_percentage_b=float(_get(data, "rolloutPercentageB", 0)),
            version=str(_get(data, "version", "1.0.0")),
            is_active=_get(data, "isActive", True),
            created_by=_get(data, "createdBy", ""),
            created_at=parse_datetime(data.get("createdAt")),
            updated_at=parse_datetime(data.get("updatedAt")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "platform": self.platform,
            "environment": self.environment,
            "flagKey": self.flag_key,
            "name": self.name,
            "description": self.description or None,
            "enabled": self.enabled,
            "flagType": self.flag_type.value,
            "valueA": self.value_a.to_json(),
            "valueB": self.value_b.to_json(),
            "targeting": self.targeting.to_dict(),
            "defaultValue": self.default_value.value,
            "rolloutEnabled": self.rollout_enabled,
            "rolloutPercentageA": self.rollout_percentage_a,
            "rolloutPercentageB": self.rollout_percentage_b,
            "version": self.version,
            "isActive": self.is_active,
            "createdBy": self.created_by or None,
            "createdAt": format_datetime(self.created_at),
            "updatedAt": format_datetime(self.updated_at),
        })


@dataclass(frozen=True)
class FlagEvaluationResult:
    """Outcome of resolving a flag for one context."""
    flag_key: str
    value: FlagValue
    served_value: ServedValue
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flagKey": self.flag_key,
            "value": self.value.to_json(),
            "servedValue": self.served_value.value,
            "reason": self.reason,
        }


# ---------------------------------------------------------------------------
# Tier 3: experiments
# ---------------------------------------------------------------------------


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class MetricType(str, Enum):
    CONVERSION = "conversion"
    COUNT = "count"
    SUM = "sum"
    AVERAGE = "average"

    @property
    def carries_value(self) -> bool:
        return self in (MetricType.SUM, MetricType.AVERAGE)


class SuccessDirection(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


@dataclass
class MetricDefinition:
    """Metric an experiment is judged on."""
    id: str
    name: str
    event_name: str
    metric_type: MetricType = MetricType.CONVERSION
    success_direction: SuccessDirection = SuccessDirection.INCREASE
    value_property: Optional[str] = None  # numeric metrics, e.g. "revenue"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricDefinition":
        return cls(
            id=data["id"],
            name=_get(data, "name", data["id"]),
            event_name=_get(data, "eventName", data["id"]),
            metric_type=MetricType(_get(data, "metricType", "conversion")),
            success_direction=SuccessDirection(_get(data, "successDirection", "increase")),
            value_property=data.get("valueProperty"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "name": self.name,
            "eventName": self.event_name,
            "metricType": self.metric_type.value,
            "successDirection": self.success_direction.value,
            "valueProperty": self.value_property,
        })


@dataclass
class Variation:
    key: str
    name: str
    value: FlagValue
    is_control: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variation":
        return cls(
            key=data["key"],
            name=_get(data, "name", data["key"]),
            value=FlagValue.of(data.get("value")),
            is_control=bool(_get(data, "isControl", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "value": self.value.to_json(),
            "isControl": self.is_control,
        }


@dataclass
class TrafficAllocation:
    variation_key: str
    percentage: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrafficAllocation":
        return cls(variation_key=data["variationKey"], percentage=float(data["percentage"]))

    def to_dict(self) -> Dict[str, Any]:
        return {"variationKey": self.variation_key, "percentage": self.percentage}


@dataclass
class Experiment:
    """Multi-variant experiment definition."""
    platform: str
    environment: str
    experiment_key: str
    variations: List[Variation] = field(default_factory=list)
    control_variation: str = ""
    traffic_allocation: List[TrafficAllocation] = field(default_factory=list)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    name: str = ""
    description: str = ""
    hypothesis: str = ""
    targeting: Targeting = field(default_factory=Targeting)
    primary_metric: Optional[MetricDefinition] = None
    secondary_metrics: List[MetricDefinition] = field(default_factory=list)
    confidence_level: float = 0.95
    minimum_detectable_effect: Optional[float] = None
    minimum_sample_size: Optional[int] = None
    winner: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    scheduled_start_at: Optional[datetime] = None
    scheduled_end_at: Optional[datetime] = None
    version: str = "1.0.0"
    is_active: bool = True
    created_by: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_variation(self, key: str) -> Optional[Variation]:
        for variation in self.variations:
            if variation.key == key:
                return variation
        return None

    @property
    def metrics(self) -> List[MetricDefinition]:
        primary = [self.primary_metric] if self.primary_metric else []
        return primary + list(self.secondary_metrics)

    def get_metric(self, metric_id: str) -> Optional[MetricDefinition]:
        for metric in self.metrics:
            if metric.id == metric_id:
                return metric
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Experiment":
        primary = data.get("primaryMetric")
        return cls(
            platform=data["platform"],
            environment=data["environment"],
            experiment_key=data["experimentKey"],
            name=_get(data, "name", ""),
            description=data.get("description") or "",
            hypothesis=_get(data, "hypothesis", ""),
            status=ExperimentStatus(_get(data, "status", "draft")),
            variations=[Variation.from_dict(v) for v in data.get("variations") or []],
            control_variation=_get(data, "controlVariation", ""),
            traffic_allocation=[
                TrafficAllocation.from_dict(t) for t in data.get("trafficAllocation") or []
            ],
            targeting=Targeting.from_dict(data.get("targeting")),
            primary_metric=MetricDefinition.from_dict(primary) if primary else None,
            secondary_metrics=[
                MetricDefinition.from_dict(m) for m in data.get("secondaryMetrics") or []
            ],
            confidence_level=float(_get(data, "confidenceLevel", 0.95)),
            minimum_detectable_effect=data.get("minimumDetectableEffect"),
            minimum_sample_size=data.get("minimumSampleSize"),
            winner=data.get("winner"),
            started_at=parse_datetime(data.get("startedAt")),
            completed_at=parse_datetime(data.get("completedAt")),
            scheduled_start_at=parse_datetime(data.get("scheduledStartAt")),
            scheduled_end_at=parse_datetime(data.get("scheduledEndAt")),
            version=str(_get(data, "version", "1.0.0")),
            is_active=_get(data, "isActive", True),
            created_by=_get(data, "createdBy", ""),
            created_at=parse_datetime(data.get("createdAt")),
            updated_at=parse_datetime(data.get("updatedAt")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "platform": self.platform,
            "environment": self.environment,
            "experimentKey": self.experiment_key,
            "name": self.name,
            "description": self.description or None,
            "hypothesis": self.hypothesis,
            "status": self.status.value,
            "variations": [v.to_dict() for v in self.variations],
            "controlVariation": self.control_variation,
            "trafficAllocation": [t.to_dict() for t in self.traffic_allocation],
            "targeting": self.targeting.to_dict(),
            "primaryMetric": self.primary_metric.to_dict() if self.primary_metric else None,
            "secondaryMetrics": [m.to_dict() for m in self.secondary_metrics],
            "confidenceLevel": self.confidence_level,
            "minimumDetectableEffect": self.minimum_detectable_effect,
            "minimumSampleSize": self.minimum_sample_size,
            "winner": self.winner,
            "startedAt": format_datetime(self.started_at),
            "completedAt": format_datetime(self.completed_at),
            "scheduledStartAt": format_datetime(self.scheduled_start_at),
            "scheduledEndAt": format_datetime(self.scheduled_end_at),
            "version": self.version,
            "isActive": self.is_active,
            "createdBy": self.created_by or None,
            "createdAt": format_datetime(self.created_at),
            "updatedAt": format_datetime(self.updated_at),
        })


@dataclass(frozen=True)
class VariantAssignment:
    """Derived, never stored: recomputed from the definition on every call."""
    experiment_key: str
    variation_key: str
    value: FlagValue
    is_control: bool
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experimentKey": self.experiment_key,
            "variationKey": self.variation_key,
            "value": self.value.to_json(),
            "isControl": self.is_control,
            "reason": self.reason,
        }


# ---------------------------------------------------------------------------
# Stats events
# ---------------------------------------------------------------------------


class StatsEventType(str, Enum):
    CONFIG_FETCH = "config_fetch"
    FLAG_EVALUATION = "flag_evaluation"
    EXPERIMENT_EXPOSURE = "experiment_exposure"
    CONVERSION = "conversion"
    CUSTOM_EVENT = "custom_event"


@dataclass
class ConfigFetchEvent:
    type: ClassVar[StatsEventType] = StatsEventType.CONFIG_FETCH
    key: str
    client_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "type": self.type.value,
            "key": self.key,
            "clientId": self.client_id,
            "timestamp": format_datetime(self.timestamp),
        })


@dataclass
class FlagEvaluationEvent:
    type: ClassVar[StatsEventType] = StatsEventType.FLAG_EVALUATION
    flag_key: str
    value: ServedValue
    user_id: str
    country: Optional[str] = None
    language: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "type": self.type.value,
            "flagKey": self.flag_key,
            "value": self.value.value,
            "userId": self.user_id,
            "country": self.country,
            "language": self.language,
            "timestamp": format_datetime(self.timestamp),
        })


@dataclass
class ExposureEvent:
    """A user was assigned to and shown a variation."""
    type: ClassVar[StatsEventType] = StatsEventType.EXPERIMENT_EXPOSURE
    experiment_key: str
    variation_key: str
    user_id: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "experimentKey": self.experiment_key,
            "variationKey": self.variation_key,
            "userId": self.user_id,
            "timestamp": format_datetime(self.timestamp),
        }


@dataclass
class ConversionEvent:
    """A metric event for a user already assigned to a variation."""
    type: ClassVar[StatsEventType] = StatsEventType.CONVERSION
    experiment_key: str
    metric_id: str
    variation_key: str
    user_id: str
    value: Optional[float] = None  # sum/average metrics only
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "type": self.type.value,
            "experimentKey": self.experiment_key,
            "metricId": self.metric_id,
            "variationKey": self.variation_key,
            "userId": self.user_id,
            "value": self.value,
            "timestamp": format_datetime(self.timestamp),
        })


@dataclass
class CustomEvent:
    type: ClassVar[StatsEventType] = StatsEventType.CUSTOM_EVENT
    event_name: str
    user_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "type": self.type.value,
            "eventName": self.event_name,
            "userId": self.user_id,
            "properties": dict(self.properties) if self.properties else None,
            "timestamp": format_datetime(self.timestamp),
        })


# ---------------------------------------------------------------------------
# Aggregated results
# ---------------------------------------------------------------------------


class ResultStatus(str, Enum):
    COLLECTING = "collecting"
    INCONCLUSIVE = "inconclusive"


@dataclass
class CountryBreakdown:
    country: str
    value_a_count: int
    value_b_count: int


@dataclass
class DailyFlagCounts:
    date: str  # YYYY-MM-DD
    value_a_count: int
    value_b_count: int


@dataclass
class FlagStats:
    """Evaluation counts for one flag."""
    flag_key: str
    total_evaluations: int = 0
    value_a_count: int = 0
    value_b_count: int = 0
    unique_users_a: int = 0
    unique_users_b: int = 0
    last_evaluated_at: Optional[datetime] = None
    by_country: List[CountryBreakdown] = field(default_factory=list)
    daily: List[DailyFlagCounts] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flagKey": self.flag_key,
            "totalEvaluations": self.total_evaluations,
            "valueACount": self.value_a_count,
            "valueBCount": self.value_b_count,
            "uniqueUsersA": self.unique_users_a,
            "uniqueUsersB": self.unique_users_b,
            "lastEvaluatedAt": format_datetime(self.last_evaluated_at),
            "byCountry": [
                {"country": c.country, "valueACount": c.value_a_count, "valueBCount": c.value_b_count}
                for c in self.by_country
            ],
            "daily": [
                {"date": d.date, "valueACount": d.value_a_count, "valueBCount": d.value_b_count}
                for d in self.daily
            ],
        }


@dataclass
class VariationResult:
    variation_key: str
    participants: int = 0
    exposures: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    relative_lift: Optional[float] = None  # vs control, as a fraction
    is_control: bool = False


@dataclass
class MetricResult:
    """Raw per-variation aggregate for one metric."""
    metric_id: str
    variation_key: str
    metric_type: MetricType
    sample_size: int = 0
    conversions: int = 0
    count: int = 0
    sum: float = 0.0
    mean: Optional[float] = None
    variance: Optional[float] = None
    standard_error: Optional[float] = None


@dataclass
class ExperimentResults:
    """Aggregated experiment data handed to the significance layer."""
    experiment_key: str
    status: ResultStatus = ResultStatus.COLLECTING
    last_updated_at: datetime = field(default_factory=utcnow)
    total_participants: int = 0
    total_conversions: int = 0
    variations: List[VariationResult] = field(default_factory=list)
    metrics: List[MetricResult] = field(default_factory=list)
    p_value: Optional[float] = None
    is_significant: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "experimentKey": self.experiment_key,
            "status": self.status.value,
            "lastUpdatedAt": format_datetime(self.last_updated_at),
            "totalParticipants": self.total_participants,
            "totalConversions": self.total_conversions,
            "variations": [
                _drop_none({
                    "variationKey": v.variation_key,
                    "participants": v.participants,
                    "exposures": v.exposures,
                    "conversions": v.conversions,
                    "conversionRate": v.conversion_rate,
                    "relativeLift": v.relative_lift,
                    "isControl": v.is_control,
                })
                for v in self.variations
            ],
            "metrics": [
                _drop_none({
                    "metricId": m.metric_id,
                    "variationKey": m.variation_key,
                    "metricType": m.metric_type.value,
                    "sampleSize": m.sample_size,
                    "conversions": m.conversions,
                    "count": m.count,
                    "sum": m.sum,
                    "mean": m.mean,
                    "variance": m.variance,
                    "standardError": m.standard_error,
                })
                for m in self.metrics
            ],
            "pValue": self.p_value,
            "isSignificant": self.is_significant,
            "warnings": list(self.warnings),
        }
