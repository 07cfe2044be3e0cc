"""lbnet exception hierarchy."""

from typing import Any

from lbnet.constants import ErrorType


class LbnetError(Exception):
    """Base exception for all lbnet errors."""

    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(LbnetError):
    """Malformed network or service configuration."""

    def __init__(
        self, message: str, field: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, details)
        self.field = field


class PortsExhaustedError(LbnetError):
    """No load balancer or port satisfies an allocation request."""

    retryable = True

    def __init__(
        self,
        message: str,
        candidates: list[str] | None = None,
        requested: int = 0,
    ) -> None:
        super().__init__(message, {"candidates": candidates or [], "requested": requested})
        self.candidates = candidates or []
        self.requested = requested


class DependencyNotReadyError(LbnetError):
    """A resource needed by the next step has not reported its identifier yet."""

    retryable = True

    def __init__(self, message: str, resource: str | None = None) -> None:
        super().__init__(message, {"resource": resource} if resource else None)
        self.resource = resource


class ConsistencyError(LbnetError):
    """Bitmap and registry disagree."""

    pass


class ApiCallError(LbnetError):
    """The cluster object store rejected or failed a call."""

    retryable = True

    def __init__(
        self,
        message: str,
        kind: str | None = None,
        name: str | None = None,
        status: int | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if kind:
            details["kind"] = kind
        if name:
            details["name"] = name
        if status is not None:
            details["status"] = status
        super().__init__(message, details)
        self.kind = kind
        self.name = name
        self.status = status


class NotFoundError(ApiCallError):
    """Requested object does not exist."""

    pass


class AlreadyExistsError(ApiCallError):
    """Object with the same name already exists."""

    pass


class ConflictError(ApiCallError):
    """Write targeted a stale resource version."""

    pass


class PluginError(LbnetError):
    """Error returned by a lifecycle hook to the control loop."""

    def __init__(self, error_type: ErrorType, message: str, retryable: bool = True) -> None:
        super().__init__(message, {"type": error_type.value})
        self.error_type = error_type
        self.retryable = retryable

    @classmethod
    def from_error(cls, err: Exception, error_type: ErrorType | None = None) -> "PluginError":
        """Wrap a domain error, choosing its category and retryability.

        Args:
            err: Original exception
            error_type: Override the inferred category

        Returns:
            PluginError carrying the original message
        """
        if isinstance(err, PluginError):
            return err
        if error_type is None:
            if isinstance(err, ConfigurationError):
                error_type = ErrorType.PARAMETER
            elif isinstance(err, ApiCallError):
                error_type = ErrorType.API_CALL
            else:
                error_type = ErrorType.INTERNAL
        retryable = getattr(err, "retryable", False) or not isinstance(err, ConfigurationError)
        plugin_error = cls(error_type, str(err), retryable=retryable)
        plugin_error.__cause__ = err
        return plugin_error
