"""
Definition fetchers for configs, flags and experiments.

``DefinitionFetcher`` is the collaborator the client reads entity
definitions through. ``InMemoryDefinitionFetcher`` serves fixed
definitions (tests, demos, embedded use); ``HttpDefinitionFetcher`` reads
them from the public REST API with bounded exponential-backoff retries.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from .exceptions import (
    ConfigurationError,
    FetchCancelledError,
    InvalidDefinitionError,
    NetworkError,
    NotFoundError,
)
from .schema import ConfigParameter, Experiment, Flag

logger = logging.getLogger(__name__)

CancelToken = threading.Event


@dataclass
class RetryPolicy:
    """Exponential backoff: ``initial_delay * 2**attempt`` capped at ``max_delay`` (seconds)."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0

    def delay(self, attempt: int) -> float:
        return min(self.initial_delay * (2 ** attempt), self.max_delay)


def _check_cancelled(cancel: Optional[CancelToken]) -> None:
    if cancel is not None and cancel.is_set():
        raise FetchCancelledError("definition fetch cancelled")


class DefinitionFetcher(Protocol):
    def get_config(
        self, platform: str, environment: str, cancel: Optional[CancelToken] = None
    ) -> List[ConfigParameter]: ...

    def get_flags(
        self, platform: str, environment: str, cancel: Optional[CancelToken] = None
    ) -> List[Flag]: ...

    def get_flag(
        self, platform: str, environment: str, flag_key: str, cancel: Optional[CancelToken] = None
    ) -> Flag: ...

    def get_experiments(
        self, platform: str, environment: str, cancel: Optional[CancelToken] = None
    ) -> List[Experiment]: ...

    def get_experiment(
        self, platform: str, environment: str, experiment_key: str, cancel: Optional[CancelToken] = None
    ) -> Experiment: ...


class InMemoryDefinitionFetcher:
    """
    Serves definitions held in memory, scoped by (platform, environment).

    ``fail_with`` makes every call raise the given exception, which is how
    tests simulate an unreachable definition store.
    """

    def __init__(
        self,
        configs: Optional[List[ConfigParameter]] = None,
        flags: Optional[List[Flag]] = None,
        experiments: Optional[List[Experiment]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._configs: List[ConfigParameter] = list(configs or [])
        self._flags: List[Flag] = list(flags or [])
        self._experiments: List[Experiment] = list(experiments or [])
        self.fail_with: Optional[Exception] = None
        self.calls: Dict[str, int] = {}

    def set_configs(self, configs: List[ConfigParameter]) -> None:
        with self._lock:
            self._configs = list(configs)

    def set_flags(self, flags: List[Flag]) -> None:
        with self._lock:
            self._flags = list(flags)

    def set_experiments(self, experiments: List[Experiment]) -> None:
        with self._lock:
            self._experiments = list(experiments)

    def _begin(self, name: str, cancel: Optional[CancelToken]) -> None:
        _check_cancelled(cancel)
        with self._lock:
            self.calls[name] = self.calls.get(name, 0) + 1
        if self.fail_with is not None:
            raise self.fail_with

    def get_config(self, platform, environment, cancel=None):
        self._begin("get_config", cancel)
        with self._lock:
            return [c for c in self._configs if c.platform == platform and c.environment == environment]

    def get_flags(self, platform, environment, cancel=None):
        self._begin("get_flags", cancel)
        with self._lock:
            return [f for f in self._flags if f.platform == platform and f.environment == environment]

    def get_flag(self, platform, environment, flag_key, cancel=None):
        for flag in self.get_flags(platform, environment, cancel):
            if flag.flag_key == flag_key:
                return flag
        raise NotFoundError("flag", flag_key)

    def get_experiments(self, platform, environment, cancel=None):
        self._begin("get_experiments", cancel)
        with self._lock:
            return [
                e for e in self._experiments
                if e.platform == platform and e.environment == environment
            ]

    def get_experiment(self, platform, environment, experiment_key, cancel=None):
        for experiment in self.get_experiments(platform, environment, cancel):
            if experiment.experiment_key == experiment_key:
                return experiment
        raise NotFoundError("experiment", experiment_key)


class HttpDefinitionFetcher:
    """
    Reads definitions from the public read API.

    Endpoints (relative to ``base_url``)::

        GET /api/v1/platforms/{p}/environments/{e}/configs
        GET /api/v1/platforms/{p}/environments/{e}/flags[/{flagKey}]
        GET /api/v1/platforms/{p}/environments/{e}/experiments[/{experimentKey}]

    Every response wraps its payload in ``{"data": ...}``. 4xx responses are
    not retried; 5xx and transport errors are retried per ``retry``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        retry: Optional[RetryPolicy] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ConfigurationError("base_url is required")
        if timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {timeout}")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self.base_url = base_url.rstrip("/")
        self.retry = retry or RetryPolicy()
        self._client = client or httpx.Client(base_url=self.base_url, headers=headers, timeout=timeout)

    @staticmethod
    def _env_path(platform: str, environment: str) -> str:
        return f"/api/v1/platforms/{platform}/environments/{environment}"

    def _request(self, path: str, cancel: Optional[CancelToken]) -> httpx.Response:
        attempt = 0
        while True:
            _check_cancelled(cancel)
            try:
                resp = self._client.get(path)
                if resp.status_code >= 400:
                    raise NetworkError(f"HTTP {resp.status_code}: {resp.text}", resp.status_code)
                return resp
            except httpx.HTTPError as e:
                error = NetworkError(f"GET {path} failed: {e}")
            except NetworkError as e:
                if e.is_client_error:
                    raise
                error = e

            if attempt >= self.retry.max_retries:
                logger.warning(f"GET {path} failed after {attempt + 1} attempts: {error}")
                raise error
            delay = self.retry.delay(attempt)
            logger.debug(f"GET {path} attempt {attempt + 1} failed ({error}); retrying in {delay:.2f}s")
            if cancel is not None:
                if cancel.wait(delay):
                    raise FetchCancelledError("definition fetch cancelled during backoff")
            else:
                time.sleep(delay)
            attempt += 1

    def _get_data(self, path: str, resource: str, key: Optional[str], cancel: Optional[CancelToken]) -> Any:
        try:
            resp = self._request(path, cancel)
        except NetworkError as e:
            if e.status_code == 404 and key is not None:
                raise NotFoundError(resource, key) from e
            raise
        try:
            body = resp.json()
        except ValueError as e:
            raise NetworkError(f"GET {path} returned invalid JSON: {e}", resp.status_code) from e
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    @staticmethod
    def _parse(parse: Callable[[Dict[str, Any]], Any], payload: Any, resource: str) -> Any:
        try:
            return parse(payload)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Discarding malformed {resource} payload: {e!r}")
            raise InvalidDefinitionError(resource, repr(e)) from e

    def _parse_list(self, parse: Callable[[Dict[str, Any]], Any], data: Any, resource: str) -> List[Any]:
        if data is None:
            return []
        if not isinstance(data, list):
            raise InvalidDefinitionError(resource, f"expected a list, got {type(data).__name__}")
        return [self._parse(parse, item, resource) for item in data]

    def get_config(self, platform, environment, cancel=None):
        data = self._get_data(f"{self._env_path(platform, environment)}/configs", "config", None, cancel)
        return self._parse_list(ConfigParameter.from_dict, data, "config")

    def get_flags(self, platform, environment, cancel=None):
        data = self._get_data(f"{self._env_path(platform, environment)}/flags", "flag", None, cancel)
        return self._parse_list(Flag.from_dict, data, "flag")

    def get_flag(self, platform, environment, flag_key, cancel=None):
        path = f"{self._env_path(platform, environment)}/flags/{flag_key}"
        return self._parse(Flag.from_dict, self._get_data(path, "flag", flag_key, cancel), "flag")

    def get_experiments(self, platform, environment, cancel=None):
        data = self._get_data(f"{self._env_path(platform, environment)}/experiments", "experiment", None, cancel)
        return self._parse_list(Experiment.from_dict, data, "experiment")

    def get_experiment(self, platform, environment, experiment_key, cancel=None):
        path = f"{self._env_path(platform, environment)}/experiments/{experiment_key}"
        data = self._get_data(path, "experiment", experiment_key, cancel)
        return self._parse(Experiment.from_dict, data, "experiment")

    def close(self) -> None:
        self._client.close()
