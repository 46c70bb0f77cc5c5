"""
Lightweight event store for recorded stats events.

Writes one CSV per event kind under data/events/<platform>/<environment>/.
Provides functions to append event batches and read them back by entity
key and time window for aggregation.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from .schema import (
    ConfigFetchEvent,
    ConversionEvent,
    CustomEvent,
    ExposureEvent,
    FlagEvaluationEvent,
    StatsEventType,
)

logger = logging.getLogger(__name__)

DEFAULT_STORE_DIR = "data/events"

_FILES = {
    StatsEventType.CONFIG_FETCH: "config_fetches.csv",
    StatsEventType.FLAG_EVALUATION: "flag_evaluations.csv",
    StatsEventType.EXPERIMENT_EXPOSURE: "exposures.csv",
    StatsEventType.CONVERSION: "conversions.csv",
    StatsEventType.CUSTOM_EVENT: "custom_events.csv",
}

_COLUMNS = {
    StatsEventType.CONFIG_FETCH: ["key", "client_id", "timestamp"],
    StatsEventType.FLAG_EVALUATION: ["flag_key", "value", "user_id", "country", "language", "timestamp"],
    StatsEventType.EXPERIMENT_EXPOSURE: ["experiment_key", "variation_key", "user_id", "timestamp"],
    StatsEventType.CONVERSION: ["experiment_key", "metric_id", "variation_key", "user_id", "value", "timestamp"],
    StatsEventType.CUSTOM_EVENT: ["event_name", "user_id", "properties", "timestamp"],
}

# Identifier columns are read back verbatim: "NA", "null" and "None" are
# valid user ids and "NA" is a country code. Only empty cells are missing.
_STRING_COLUMNS = (
    "key", "client_id", "flag_key", "experiment_key", "metric_id", "variation_key",
    "event_name", "user_id", "country", "language",
)

_write_lock = threading.Lock()


def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _table_path(kind: StatsEventType, platform: str, environment: str, base_dir: str) -> Path:
    return Path(base_dir) / platform / environment / _FILES[kind]


def _read_table(path: Path, columns: List[str]) -> pd.DataFrame:
    if not path.exists():
        return pd.DataFrame(columns=columns)
    try:
        df = pd.read_csv(
            path,
            dtype={col: str for col in columns if col in _STRING_COLUMNS},
            keep_default_na=False,
            na_values=[""],
        )
    except pd.errors.EmptyDataError:
        return pd.DataFrame(columns=columns)
    if "timestamp" in df.columns:
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True, format="ISO8601")
    return df


def _event_to_row(evt: Any) -> Dict[str, Any]:
    if isinstance(evt, FlagEvaluationEvent):
        return {
            "flag_key": evt.flag_key,
            "value": evt.value.value,
            "user_id": evt.user_id,
            "country": evt.country,
            "language": evt.language,
            "timestamp": evt.timestamp.isoformat(),
        }
    if isinstance(evt, ExposureEvent):
        return {
            "experiment_key": evt.experiment_key,
            "variation_key": evt.variation_key,
            "user_id": evt.user_id,
            "timestamp": evt.timestamp.isoformat(),
        }
    if isinstance(evt, ConversionEvent):
        return {
            "experiment_key": evt.experiment_key,
            "metric_id": evt.metric_id,
            "variation_key": evt.variation_key,
            "user_id": evt.user_id,
            "value": evt.value,
            "timestamp": evt.timestamp.isoformat(),
        }
    if isinstance(evt, CustomEvent):
        return {
            "event_name": evt.event_name,
            "user_id": evt.user_id,
            "properties": json.dumps(evt.properties) if evt.properties else "",
            "timestamp": evt.timestamp.isoformat(),
        }
    if isinstance(evt, ConfigFetchEvent):
        return {"key": evt.key, "client_id": evt.client_id, "timestamp": evt.timestamp.isoformat()}
    raise TypeError(f"Unsupported event type: {type(evt).__name__}")


def append_events(
    events: Iterable[Any],
    platform: str,
    environment: str,
    base_dir: str = DEFAULT_STORE_DIR,
) -> int:
    """
    Append stats events to the store, one file per event kind.

    Args:
        events: Stats event dataclasses (any mix of kinds)
        platform: Platform the events belong to
        environment: Environment the events belong to
        base_dir: Base directory for event data

    Returns:
        Number of events appended
    """
    rows: Dict[StatsEventType, List[Dict[str, Any]]] = {}
    for evt in events:
        rows.setdefault(evt.type, []).append(_event_to_row(evt))

    total = 0
    with _write_lock:
        for kind, kind_rows in rows.items():
            path = _table_path(kind, platform, environment, base_dir)
            _ensure_dir(path.parent)
            df_new = pd.DataFrame(kind_rows, columns=_COLUMNS[kind])
            df_new.to_csv(path, mode="a", header=not path.exists(), index=False)
            total += len(kind_rows)
            logger.info(f"Appended {len(kind_rows)} {kind.value} events to {path}")
    return total


def _filter_window(
    df: pd.DataFrame,
    start_date: Optional[datetime],
    end_date: Optional[datetime],
) -> pd.DataFrame:
    if df.empty or "timestamp" not in df.columns:
        return df
    if start_date:
        df = df[df["timestamp"] >= pd.Timestamp(start_date)]
    if end_date:
        df = df[df["timestamp"] <= pd.Timestamp(end_date)]
    return df


def _read_kind(
    kind: StatsEventType,
    platform: str,
    environment: str,
    key_col: Optional[str],
    key: Optional[str],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    base_dir: str,
) -> pd.DataFrame:
    path = _table_path(kind, platform, environment, base_dir)
    df = _read_table(path, _COLUMNS[kind])
    if key is not None and key_col in df.columns:
        df = df[df[key_col] == key]
    return _filter_window(df, start_date, end_date).reset_index(drop=True)


def read_flag_evaluations(
    platform: str,
    environment: str,
    flag_key: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    base_dir: str = DEFAULT_STORE_DIR,
) -> pd.DataFrame:
    """
    Read flag evaluation events, optionally for one flag and time window.

    Returns:
        DataFrame with flag_key, value (A/B), user_id, country, language, timestamp
    """
    return _read_kind(
        StatsEventType.FLAG_EVALUATION, platform, environment,
        "flag_key", flag_key, start_date, end_date, base_dir,
    )


def read_exposures(
    platform: str,
    environment: str,
    experiment_key: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    base_dir: str = DEFAULT_STORE_DIR,
) -> pd.DataFrame:
    """
    Read exposure events for an experiment, optionally filtered by time.

    Returns:
        DataFrame with experiment_key, variation_key, user_id, timestamp
    """
    return _read_kind(
        StatsEventType.EXPERIMENT_EXPOSURE, platform, environment,
        "experiment_key", experiment_key, start_date, end_date, base_dir,
    )


def read_conversions(
    platform: str,
    environment: str,
    experiment_key: Optional[str] = None,
    metric_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    base_dir: str = DEFAULT_STORE_DIR,
) -> pd.DataFrame:
    """
    Read conversion events for an experiment.

    Returns:
        DataFrame with experiment_key, metric_id, variation_key, user_id, value, timestamp
    """
    df = _read_kind(
        StatsEventType.CONVERSION, platform, environment,
        "experiment_key", experiment_key, start_date, end_date, base_dir,
    )
    if metric_id is not None and not df.empty:
        df = df[df["metric_id"] == metric_id].reset_index(drop=True)
    return df


def read_custom_events(
    platform: str,
    environment: str,
    event_name: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    base_dir: str = DEFAULT_STORE_DIR,
) -> pd.DataFrame:
    """Read custom events; ``properties`` stays a JSON string column."""
    return _read_kind(
        StatsEventType.CUSTOM_EVENT, platform, environment,
        "event_name", event_name, start_date, end_date, base_dir,
    )


def get_store_summary(platform: str, environment: str, base_dir: str = DEFAULT_STORE_DIR) -> dict:
    """
    Get row counts per event kind.

    Returns:
        Dict with n_flag_evaluations, n_exposures, n_conversions, n_custom_events, n_config_fetches
    """
    counts = {}
    for kind, name in (
        (StatsEventType.FLAG_EVALUATION, "n_flag_evaluations"),
        (StatsEventType.EXPERIMENT_EXPOSURE, "n_exposures"),
        (StatsEventType.CONVERSION, "n_conversions"),
        (StatsEventType.CUSTOM_EVENT, "n_custom_events"),
        (StatsEventType.CONFIG_FETCH, "n_config_fetches"),
    ):
        path = _table_path(kind, platform, environment, base_dir)
        counts[name] = len(_read_table(path, _COLUMNS[kind]))
    return counts
