"""
Error taxonomy for the evaluation engine and its orchestration client.

Pure evaluation functions never raise for well-formed input; these errors
come from client construction, definition fetching and write-time checks.
"""

from typing import List, Optional


class ErrorCodes:
    """Error code constants."""
    NOT_FOUND = "NOT_FOUND"
    CONFIG_ERROR = "CONFIG_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    CANCELLED = "CANCELLED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_DEFINITION = "INVALID_DEFINITION"
    INVALID_TRANSITION = "INVALID_TRANSITION"


class ToggleBoxError(Exception):
    """Base class for every error raised by this package."""

    code = "TOGGLEBOX_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class NotFoundError(ToggleBoxError):
    """Flag, experiment or config key does not exist for the platform/environment."""

    code = ErrorCodes.NOT_FOUND

    def __init__(self, resource: str, key: str) -> None:
        super().__init__(f"{resource} not found: {key}")
        self.resource = resource
        self.key = key


class ConfigurationError(ToggleBoxError):
    """Malformed client setup. Raised at construction time only."""

    code = ErrorCodes.CONFIG_ERROR


class NetworkError(ToggleBoxError):
    """Transport failure or non-2xx response from the definition store."""

    code = ErrorCodes.NETWORK_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class InvalidDefinitionError(ToggleBoxError):
    """The store returned a definition that does not parse into an entity."""

    code = ErrorCodes.INVALID_DEFINITION

    def __init__(self, resource: str, message: str) -> None:
        super().__init__(f"malformed {resource} definition: {message}")
        self.resource = resource


class FetchCancelledError(ToggleBoxError):
    """The caller's cancellation token was set before the fetch completed."""

    code = ErrorCodes.CANCELLED


class ValidationError(ToggleBoxError):
    """Entity definition failed write-time integrity checks."""

    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, details: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.details = list(details or [])


class InvalidTransitionError(ToggleBoxError):
    """Illegal experiment status change."""

    code = ErrorCodes.INVALID_TRANSITION

    def __init__(self, current: str, target: str, message: str = "") -> None:
        super().__init__(message or f"cannot move experiment from '{current}' to '{target}'")
        self.current = current
        self.target = target
