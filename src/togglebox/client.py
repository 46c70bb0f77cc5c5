"""
Evaluation orchestration client.

Merges a client-level default context with per-call overrides, caches
definitions per (platform, environment) with a short TTL, dispatches to the
config/flag/experiment tier and records stats. Calls with a sensible default
(``is_flag_enabled``, ``get_flag_value``, ``get_config_value``) degrade to
that default on fetch failure; calls without one (``get_variant``,
``evaluate_flag``) raise.
"""

import copy
import logging
import os
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .assignment import assign_variation, assign_variation_with_tracking
from .cache import DEFAULT_TTL, TTLCache
from .exceptions import ConfigurationError, NotFoundError, ToggleBoxError
from .fetcher import CancelToken, DefinitionFetcher, HttpDefinitionFetcher, RetryPolicy
from .flags import evaluate_flag_with_tracking
from .recording import HttpStatsTransport, NullStatsSink, ReporterOptions, StatsReporter, StatsSink
from .schema import (
    ConfigParameter,
    EvaluationContext,
    Experiment,
    Flag,
    FlagEvaluationResult,
    ValueType,
    VariantAssignment,
)

logger = logging.getLogger(__name__)

TENANT_URL_TEMPLATE = "https://{subdomain}.togglebox.io"
SUBSCRIBER_QUEUE_SIZE = 100


@dataclass
class ClientOptions:
    """Client configuration. Exactly one of ``api_url`` / ``tenant_subdomain`` is required."""
    platform: str
    environment: str
    api_url: Optional[str] = None
    tenant_subdomain: Optional[str] = None
    api_key: Optional[str] = None
    cache_enabled: bool = True
    cache_ttl: float = DEFAULT_TTL  # seconds
    polling_interval: float = 0.0  # seconds, 0 = off
    timeout: float = 10.0
    max_retries: int = 3
    stats: ReporterOptions = field(default_factory=ReporterOptions)

    def validate(self) -> None:
        if not self.platform or not self.environment:
            raise ConfigurationError("Missing required options: platform and environment are required")
        if self.api_url and self.tenant_subdomain:
            raise ConfigurationError("Cannot provide both api_url and tenant_subdomain - use one or the other")
        if not self.api_url and not self.tenant_subdomain:
            raise ConfigurationError("Either api_url or tenant_subdomain must be provided")
        if self.cache_ttl <= 0:
            raise ConfigurationError(f"cache_ttl must be positive, got {self.cache_ttl}")
        if self.polling_interval < 0:
            raise ConfigurationError(f"polling_interval must be >= 0, got {self.polling_interval}")
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")

    @property
    def base_url(self) -> str:
        if self.tenant_subdomain:
            return TENANT_URL_TEMPLATE.format(subdomain=self.tenant_subdomain)
        return (self.api_url or "").rstrip("/")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ClientOptions":
        """Build options from TOGGLEBOX_* environment variables."""
        env = os.environ if environ is None else environ

        def _float(name: str, default: float) -> float:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            try:
                return float(raw)
            except ValueError as e:
                raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e

        return cls(
            platform=env.get("TOGGLEBOX_PLATFORM", ""),
            environment=env.get("TOGGLEBOX_ENVIRONMENT", ""),
            api_url=env.get("TOGGLEBOX_API_URL") or None,
            tenant_subdomain=env.get("TOGGLEBOX_TENANT_SUBDOMAIN") or None,
            api_key=env.get("TOGGLEBOX_API_KEY") or None,
            cache_ttl=_float("TOGGLEBOX_CACHE_TTL", DEFAULT_TTL),
            polling_interval=_float("TOGGLEBOX_POLLING_INTERVAL", 0.0),
        )


@dataclass
class RefreshResult:
    skipped: bool = False
    configs: List[ConfigParameter] = field(default_factory=list)
    flags: List[Flag] = field(default_factory=list)
    experiments: List[Experiment] = field(default_factory=list)


@dataclass
class ClientEvent:
    kind: str  # "update" | "error"
    payload: Any = None


class ToggleBoxClient:
    """
    Thread-safe client over a definition fetcher and a stats sink.

    ``with_context`` returns a view sharing the cache, fetcher, stats sink
    and subscribers but carrying its own base context. Closing a view is a
    no-op; only the client that created the resources closes them.
    """

    def __init__(
        self,
        options: ClientOptions,
        fetcher: Optional[DefinitionFetcher] = None,
        stats: Optional[StatsSink] = None,
        context: Optional[EvaluationContext] = None,
    ) -> None:
        options.validate()
        self.options = options
        self.platform = options.platform
        self.environment = options.environment
        self._context = context or EvaluationContext()
        self._cache = TTLCache(ttl=options.cache_ttl, enabled=options.cache_enabled)

        self._owns_fetcher = fetcher is None
        self._fetcher = fetcher or HttpDefinitionFetcher(
            options.base_url,
            api_key=options.api_key,
            timeout=options.timeout,
            retry=RetryPolicy(max_retries=options.max_retries),
        )

        self._owns_stats = stats is None
        if stats is not None:
            self._stats = stats
        elif options.stats.enabled:
            transport = HttpStatsTransport(
                options.base_url, self.platform, self.environment,
                api_key=options.api_key, timeout=options.timeout,
            )
            self._stats = StatsReporter(transport, options.stats, on_error=self._on_stats_error)
        else:
            self._stats = NullStatsSink()

        self._refresh_lock = threading.Lock()
        self._subscribers_lock = threading.Lock()
        self._subscribers: List[queue.Queue] = []
        self._polling_stop = threading.Event()
        self._polling_thread: Optional[threading.Thread] = None
        self._is_view = False

        if options.polling_interval > 0:
            self.start_polling()

    # -- context -------------------------------------------------------------

    @property
    def context(self) -> EvaluationContext:
        return self._context

    def with_context(self, context: EvaluationContext) -> "ToggleBoxClient":
        view = copy.copy(self)
        view._context = context
        view._is_view = True
        return view

    def _merge(self, context: Optional[EvaluationContext]) -> EvaluationContext:
        return self._context.merged(context)

    # -- cached reads --------------------------------------------------------

    def _cache_key(self, kind: str) -> str:
        return f"{kind}:{self.platform}:{self.environment}"

    def _cached(self, kind: str, load: Callable[[], Any]) -> Any:
        key = self._cache_key(kind)
        data = self._cache.get(key)
        if data is not None:
            return data
        data = load()
        self._cache.set(key, data)
        return data

    def get_config(self, cancel: Optional[CancelToken] = None) -> List[ConfigParameter]:
        return self._cached(
            "config", lambda: self._fetcher.get_config(self.platform, self.environment, cancel)
        )

    def get_config_value(self, key: str, default: Any = None) -> Any:
        """Typed value of a config parameter, or ``default`` when missing, unparsable or unreachable."""
        try:
            params = self.get_config()
        except ToggleBoxError as e:
            logger.warning(f"Config fetch failed, serving default for {key}: {e}")
            self._emit(ClientEvent("error", e))
            return default
        self._record(lambda: self._stats.track_config_fetch(key))
        for param in params:
            if param.parameter_key == key and param.is_active:
                try:
                    return param.parsed_value()
                except ValueError as e:
                    logger.warning(f"Config parameter {key} does not parse as {param.value_type.value}: {e}")
                    return default
        return default

    def get_flags(self, cancel: Optional[CancelToken] = None) -> List[Flag]:
        return self._cached(
            "flags", lambda: self._fetcher.get_flags(self.platform, self.environment, cancel)
        )

    def get_flag(self, flag_key: str, cancel: Optional[CancelToken] = None) -> Flag:
        for flag in self.get_flags(cancel):
            if flag.flag_key == flag_key:
                return flag
        raise NotFoundError("flag", flag_key)

    def get_experiments(self, cancel: Optional[CancelToken] = None) -> List[Experiment]:
        return self._cached(
            "experiments", lambda: self._fetcher.get_experiments(self.platform, self.environment, cancel)
        )

    def get_experiment(self, experiment_key: str, cancel: Optional[CancelToken] = None) -> Experiment:
        for experiment in self.get_experiments(cancel):
            if experiment.experiment_key == experiment_key:
                return experiment
        raise NotFoundError("experiment", experiment_key)

    # -- Tier 2: flags -------------------------------------------------------

    def evaluate_flag(
        self,
        flag_key: str,
        context: Optional[EvaluationContext] = None,
    ) -> FlagEvaluationResult:
        """Evaluate one flag. Raises NotFoundError or NetworkError."""
        flag = self.get_flag(flag_key)
        return evaluate_flag_with_tracking(flag, self._merge(context), self._stats)

    def is_flag_enabled(
        self,
        flag_key: str,
        context: Optional[EvaluationContext] = None,
        default: bool = False,
    ) -> bool:
        try:
            result = self.evaluate_flag(flag_key, context)
        except ToggleBoxError as e:
            logger.warning(f"Flag {flag_key} unavailable, serving default {default}: {e}")
            self._emit(ClientEvent("error", e))
            return default
        if result.value.type is not ValueType.BOOLEAN:
            logger.warning(f"Flag {flag_key} is not boolean; serving default {default}")
            return default
        return result.value.value is True

    def get_flag_value(
        self,
        flag_key: str,
        context: Optional[EvaluationContext] = None,
        default: Any = None,
    ) -> Any:
        try:
            return self.evaluate_flag(flag_key, context).value.value
        except ToggleBoxError as e:
            logger.warning(f"Flag {flag_key} unavailable, serving default: {e}")
            self._emit(ClientEvent("error", e))
            return default

    def get_all_flags(self, context: Optional[EvaluationContext] = None) -> Dict[str, FlagEvaluationResult]:
        merged = self._merge(context)
        return {
            flag.flag_key: evaluate_flag_with_tracking(flag, merged, self._stats)
            for flag in self.get_flags()
        }

    # -- Tier 3: experiments -------------------------------------------------

    def get_variant(
        self,
        experiment_key: str,
        context: Optional[EvaluationContext] = None,
    ) -> Optional[VariantAssignment]:
        """
        Assign the caller to a variation and record the exposure.

        Returns:
            VariantAssignment, or None when the user is not in the experiment

        Raises:
            NotFoundError: unknown experiment key
            NetworkError: definitions could not be fetched
        """
        experiment = self.get_experiment(experiment_key)
        return assign_variation_with_tracking(experiment, self._merge(context), self._stats)

    def get_all_variants(self, context: Optional[EvaluationContext] = None) -> Dict[str, VariantAssignment]:
        merged = self._merge(context)
        assignments = {}
        for experiment in self.get_experiments():
            assignment = assign_variation_with_tracking(experiment, merged, self._stats)
            if assignment is not None:
                assignments[experiment.experiment_key] = assignment
        return assignments

    def track_conversion(
        self,
        experiment_key: str,
        context: Optional[EvaluationContext],
        metric_id: str,
        value: Optional[float] = None,
    ) -> bool:
        """
        Record a conversion against the user's (re-derived) variation.

        Returns:
            True if a conversion was recorded, False if the user is not assigned
            or the experiment is unavailable
        """
        merged = self._merge(context)
        try:
            experiment = self.get_experiment(experiment_key)
        except ToggleBoxError as e:
            logger.warning(f"Cannot track conversion for {experiment_key}: {e}")
            return False
        assignment = assign_variation(experiment, merged)
        if assignment is None:
            logger.debug(f"{merged.effective_user_id} not in {experiment_key}; conversion not tracked")
            return False
        self._record(lambda: self._stats.track_conversion(
            experiment_key, metric_id, assignment.variation_key, merged.effective_user_id, value
        ))
        return True

    def track_event(
        self,
        event_name: str,
        context: Optional[EvaluationContext] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = self._merge(context)
        self._record(lambda: self._stats.track_custom_event(event_name, merged.user_id, data))

    def _record(self, call: Callable[[], None]) -> None:
        try:
            call()
        except Exception as e:
            logger.warning(f"Stats recording failed: {e}")

    def flush_stats(self) -> int:
        if isinstance(self._stats, StatsReporter):
            return self._stats.flush()
        return 0

    def _on_stats_error(self, error: Exception) -> None:
        self._emit(ClientEvent("error", error))

    # -- refresh / polling ---------------------------------------------------

    def refresh(self, cancel: Optional[CancelToken] = None) -> RefreshResult:
        """
        Re-fetch all three tiers and replace the cached copies.

        Single-flight: returns ``RefreshResult(skipped=True)`` if a refresh
        is already running. On failure the previous cache entries are kept
        and the error is re-raised after notifying subscribers.
        """
        if not self._refresh_lock.acquire(blocking=False):
            logger.debug("Refresh already in progress; skipped")
            return RefreshResult(skipped=True)
        try:
            try:
                configs = self._fetcher.get_config(self.platform, self.environment, cancel)
                flags = self._fetcher.get_flags(self.platform, self.environment, cancel)
                experiments = self._fetcher.get_experiments(self.platform, self.environment, cancel)
            except ToggleBoxError as e:
                logger.warning(f"Refresh of {self.platform}/{self.environment} failed: {e}")
                self._emit(ClientEvent("error", e))
                raise
            self._cache.set(self._cache_key("config"), configs)
            self._cache.set(self._cache_key("flags"), flags)
            self._cache.set(self._cache_key("experiments"), experiments)
            result = RefreshResult(configs=configs, flags=flags, experiments=experiments)
            logger.info(
                f"Refreshed {self.platform}/{self.environment}: {len(configs)} configs, "
                f"{len(flags)} flags, {len(experiments)} experiments"
            )
            self._emit(ClientEvent("update", result))
            return result
        finally:
            self._refresh_lock.release()

    def start_polling(self) -> None:
        if self._polling_thread is not None and self._polling_thread.is_alive():
            return
        if self.options.polling_interval <= 0:
            raise ConfigurationError("polling_interval must be positive to start polling")
        self._polling_stop = threading.Event()
        self._polling_thread = threading.Thread(
            target=self._poll, args=(self._polling_stop,), name="togglebox-poll", daemon=True
        )
        self._polling_thread.start()

    def _poll(self, stop: threading.Event) -> None:
        while not stop.wait(self.options.polling_interval):
            try:
                self.refresh(cancel=stop)
            except ToggleBoxError:
                # already logged and emitted by refresh()
                continue

    def stop_polling(self) -> None:
        self._polling_stop.set()
        if self._polling_thread is not None:
            self._polling_thread.join(timeout=self.options.timeout)
            self._polling_thread = None

    # -- notifications -------------------------------------------------------

    def subscribe(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> "queue.Queue[ClientEvent]":
        """
        Register a queue that receives every ClientEvent.

        The queue is bounded; when a subscriber falls behind, its oldest
        undelivered event is dropped to make room.
        """
        q: "queue.Queue[ClientEvent]" = queue.Queue(maxsize=maxsize)
        with self._subscribers_lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: "queue.Queue[ClientEvent]") -> None:
        with self._subscribers_lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def _emit(self, event: ClientEvent) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            while True:
                try:
                    q.put_nowait(event)
                    break
                except queue.Full:
                    try:
                        q.get_nowait()
                    except queue.Empty:
                        pass  # drained concurrently; retry the put
                    logger.warning(f"Subscriber queue full ({q.maxsize}); dropped oldest {event.kind} event")

    # -- lifecycle -----------------------------------------------------------

    def clear_cache(self) -> None:
        self._cache.clear()

    def close(self) -> None:
        if self._is_view:
            return
        self.stop_polling()
        if self._owns_stats and isinstance(self._stats, StatsReporter):
            self._stats.close()
        if self._owns_fetcher and isinstance(self._fetcher, HttpDefinitionFetcher):
            self._fetcher.close()

    def __enter__(self) -> "ToggleBoxClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
