"""
Exposure, conversion and evaluation recording.

``StatsSink`` is the contract the resolver and assignor report through.
``StatsReporter`` implements it with a bounded in-memory queue (drop-oldest
under overload) drained by a background thread in batches, so callers never
block on, retry, or fail because of recording.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

import httpx

from .event_store import DEFAULT_STORE_DIR, append_events
from .exceptions import NetworkError
from .fetcher import RetryPolicy
from .schema import (
    ConfigFetchEvent,
    ConversionEvent,
    CustomEvent,
    ExposureEvent,
    FlagEvaluationEvent,
    ServedValue,
)

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_REQUEST = 100


class StatsSink(Protocol):
    """Recording contract consumed by flag evaluation and experiment assignment."""

    def track_flag_evaluation(
        self,
        flag_key: str,
        served_value: ServedValue,
        user_id: str,
        country: Optional[str] = None,
        language: Optional[str] = None,
    ) -> None: ...

    def track_experiment_exposure(self, experiment_key: str, variation_key: str, user_id: str) -> None: ...

    def track_conversion(
        self,
        experiment_key: str,
        metric_id: str,
        variation_key: str,
        user_id: str,
        value: Optional[float] = None,
    ) -> None: ...

    def track_config_fetch(self, key: str) -> None: ...

    def track_custom_event(
        self,
        event_name: str,
        user_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> None: ...


class NullStatsSink:
    """Sink that discards everything."""

    def track_flag_evaluation(self, flag_key, served_value, user_id, country=None, language=None):
        pass

    def track_experiment_exposure(self, experiment_key, variation_key, user_id):
        pass

    def track_conversion(self, experiment_key, metric_id, variation_key, user_id, value=None):
        pass

    def track_config_fetch(self, key):
        pass

    def track_custom_event(self, event_name, user_id=None, properties=None):
        pass


class StatsTransport(Protocol):
    def send(self, events: List[Any]) -> None: ...


@dataclass
class ReporterOptions:
    enabled: bool = True
    batch_size: int = 20
    flush_interval: float = 10.0  # seconds
    max_queue_size: int = 1000
    max_retries: int = 3
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 10.0


class StatsReporter:
    """
    Batching ``StatsSink`` backed by a pluggable transport.

    Every ``track_*`` call only appends to a bounded deque. A daemon thread
    flushes every ``flush_interval`` seconds or as soon as ``batch_size``
    events are waiting. Failed batches are re-queued unless the server
    rejected them with a 4xx.
    """

    def __init__(
        self,
        transport: StatsTransport,
        options: Optional[ReporterOptions] = None,
        on_flush: Optional[Callable[[int], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        start_thread: bool = True,
    ) -> None:
        self.options = options or ReporterOptions()
        self._transport = transport
        self._on_flush = on_flush
        self._on_error = on_error
        self._queue: Deque[Any] = deque()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._retry = RetryPolicy(
            max_retries=self.options.max_retries,
            initial_delay=self.options.initial_retry_delay,
            max_delay=self.options.max_retry_delay,
        )
        self.dropped = 0
        self._thread: Optional[threading.Thread] = None
        if self.options.enabled and start_thread:
            self._thread = threading.Thread(target=self._run, name="togglebox-stats", daemon=True)
            self._thread.start()

    # -- StatsSink -----------------------------------------------------------

    def track_flag_evaluation(self, flag_key, served_value, user_id, country=None, language=None):
        self._enqueue(FlagEvaluationEvent(
            flag_key=flag_key,
            value=ServedValue(served_value),
            user_id=user_id,
            country=country,
            language=language,
        ))

    def track_experiment_exposure(self, experiment_key, variation_key, user_id):
        self._enqueue(ExposureEvent(
            experiment_key=experiment_key,
            variation_key=variation_key,
            user_id=user_id,
        ))

    def track_conversion(self, experiment_key, metric_id, variation_key, user_id, value=None):
        self._enqueue(ConversionEvent(
            experiment_key=experiment_key,
            metric_id=metric_id,
            variation_key=variation_key,
            user_id=user_id,
            value=value,
        ))

    def track_config_fetch(self, key):
        self._enqueue(ConfigFetchEvent(key=key))

    def track_custom_event(self, event_name, user_id=None, properties=None):
        self._enqueue(CustomEvent(event_name=event_name, user_id=user_id, properties=dict(properties or {})))

    # -- queue ---------------------------------------------------------------

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def _enqueue(self, event: Any) -> None:
        if not self.options.enabled:
            return
        with self._lock:
            if len(self._queue) >= self.options.max_queue_size:
                self._queue.popleft()
                self.dropped += 1
                logger.warning(
                    f"Stats queue full ({self.options.max_queue_size}); dropped oldest event"
                )
            self._queue.append(event)
            batch_ready = len(self._queue) >= self.options.batch_size
        if batch_ready:
            self._wake.set()

    def _requeue(self, events: List[Any]) -> None:
        with self._lock:
            self._queue.extendleft(reversed(events))
            overflow = len(self._queue) - self.options.max_queue_size
            for _ in range(max(overflow, 0)):
                self._queue.popleft()
                self.dropped += 1

    def flush(self) -> int:
        """
        Send everything currently queued. Single-flight: returns 0 if a flush is in progress.

        Returns:
            Number of events delivered
        """
        if not self._flush_lock.acquire(blocking=False):
            return 0
        try:
            with self._lock:
                events = list(self._queue)
                self._queue.clear()
            if not events:
                return 0
            try:
                self._send_with_retry(events)
            except Exception as e:
                client_error = isinstance(e, NetworkError) and e.is_client_error
                if not client_error:
                    self._requeue(events)
                logger.warning(f"Failed to flush {len(events)} stats events: {e}")
                self._notify(self._on_error, e)
                return 0
            logger.info(f"Flushed {len(events)} stats events")
            self._notify(self._on_flush, len(events))
            return len(events)
        finally:
            self._flush_lock.release()

    def _send_with_retry(self, events: List[Any]) -> None:
        attempt = 0
        while True:
            try:
                self._transport.send(events)
                return
            except Exception as e:
                if isinstance(e, NetworkError) and e.is_client_error:
                    raise
                if attempt >= self._retry.max_retries - 1 or self._stopped.is_set():
                    logger.error(f"Giving up on stats batch after {attempt + 1} attempts: {e}")
                    raise
                self._stopped.wait(self._retry.delay(attempt))
                attempt += 1

    @staticmethod
    def _notify(callback: Optional[Callable], payload: Any) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            logger.warning(f"Stats callback raised: {e}")

    def _run(self) -> None:
        while not self._stopped.is_set():
            self._wake.wait(self.options.flush_interval)
            self._wake.clear()
            if self._stopped.is_set():
                break
            self.flush()

    def close(self) -> None:
        """Stop the background thread and make a final, single-attempt flush."""
        self._stopped.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=self.options.flush_interval)
            self._thread = None
        self.flush()


class HttpStatsTransport:
    """Posts event batches to the stats ingestion endpoint."""

    def __init__(
        self,
        base_url: str,
        platform: str,
        environment: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )
        self._path = f"/api/v1/platforms/{platform}/environments/{environment}/stats/events"

    def send(self, events: List[Any]) -> None:
        for start in range(0, len(events), MAX_EVENTS_PER_REQUEST):
            chunk = events[start:start + MAX_EVENTS_PER_REQUEST]
            try:
                resp = self._client.post(self._path, json={"events": [e.to_dict() for e in chunk]})
            except httpx.HTTPError as e:
                raise NetworkError(f"Failed to post stats events: {e}") from e
            if resp.status_code >= 400:
                raise NetworkError(f"HTTP {resp.status_code}: {resp.text}", resp.status_code)

    def close(self) -> None:
        self._client.close()


class EventStoreTransport:
    """Writes event batches to the local pandas event store."""

    def __init__(self, platform: str, environment: str, base_dir: str = DEFAULT_STORE_DIR) -> None:
        self.platform = platform
        self.environment = environment
        self.base_dir = base_dir

    def send(self, events: List[Any]) -> None:
        append_events(events, self.platform, self.environment, base_dir=self.base_dir)
