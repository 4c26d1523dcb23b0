"""Error taxonomy surfaced by the gateway.

Every failure a caller can observe is a ``GatewayError`` subclass carrying a
stable ``code``. The HTTP layer and the caller client translate on ``code``.
"""

from typing import Any


class GatewayError(Exception):
    """Base class for gateway errors."""

    code = "GatewayError"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ConfigError(GatewayError):
    """Catalog definitions are malformed; raised by reload only."""

    code = "ConfigError"

    def __init__(self, message: str, problems: list[str] | None = None, **context: Any):
        super().__init__(message, **context)
        self.problems = list(problems or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.problems:
            data["problems"] = self.problems
        return data


class UnknownCatalog(GatewayError):
    code = "UnknownCatalog"


class UnknownTool(GatewayError):
    code = "UnknownTool"


class InvalidArguments(GatewayError):
    code = "InvalidArguments"


class BackendUnavailable(GatewayError):
    """No healthy backend could serve the call. Callers may retry."""

    code = "BackendUnavailable"


class DispatchTimeout(GatewayError):
    """The caller's deadline passed. The backend instance is left running."""

    code = "Timeout"


class SecretResolutionFailed(GatewayError):
    code = "SecretResolutionFailed"


class ToolCallFailed(GatewayError):
    """The backend answered the call with a protocol-level error."""

    code = "ToolCallFailed"


ERRORS_BY_CODE: dict[str, type[GatewayError]] = {
    cls.code: cls
    for cls in (
        ConfigError,
        UnknownCatalog,
        UnknownTool,
        InvalidArguments,
        BackendUnavailable,
        DispatchTimeout,
        SecretResolutionFailed,
        ToolCallFailed,
    )
}


def error_from_code(code: str, message: str) -> GatewayError:
    """Rebuild a gateway error from its wire representation."""
    return ERRORS_BY_CODE.get(code, GatewayError)(message)
