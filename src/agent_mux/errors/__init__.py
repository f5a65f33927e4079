"""agent-mux error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Codes carried by the ``code`` field of an error document."""

    INVALID_ARGS = "INVALID_ARGS"
    MISSING_API_KEY = "MISSING_API_KEY"
    SDK_ERROR = "SDK_ERROR"


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    CONFIGURATION = "configuration"
    CREDENTIALS = "credentials"
    ENGINE = "engine"
    CANCELLATION = "cancellation"
    INTERNAL = "internal"


_CODE_BY_CATEGORY: dict[ErrorCategory, ErrorCode] = {
    ErrorCategory.CONFIGURATION: ErrorCode.INVALID_ARGS,
    ErrorCategory.CREDENTIALS: ErrorCode.MISSING_API_KEY,
}


class AgentMuxError(Exception):
    """Base error for all agent-mux exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.details: dict[str, Any] = details or {}

    @property
    def code(self) -> ErrorCode:
        """Error-document code this exception maps to."""
        return _CODE_BY_CATEGORY.get(self.category, ErrorCode.SDK_ERROR)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class ConfigurationError(AgentMuxError):
    """Invalid command-line arguments or run configuration."""

    def __init__(self, message: str, *, engine: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION)
        self.engine = engine


class MissingApiKeyError(AgentMuxError):
    """Credentials required by the selected engine are absent."""

    def __init__(self, message: str, *, engine: str, env_var: str) -> None:
        super().__init__(
            message,
            category=ErrorCategory.CREDENTIALS,
            details={"env_var": env_var},
        )
        self.engine = engine
        self.env_var = env_var


class EngineError(AgentMuxError):
    """Genuine backend failure (malformed stream, crash, failed turn)."""

    def __init__(
        self,
        message: str,
        *,
        engine: str,
        exit_code: int | None = None,
        stderr_tail: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, category=ErrorCategory.ENGINE, **kwargs)
        self.engine = engine
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class EngineNotFoundError(EngineError):
    """The backend's CLI binary could not be located."""

    def __init__(self, engine: str, binary: str, hint: str = "") -> None:
        message = f"{binary} CLI binary not found on PATH."
        if hint:
            message = f"{message} {hint}"
        super().__init__(message, engine=engine, details={"binary": binary})
        self.binary = binary


class CancellationError(AgentMuxError):
    """Run was cancelled cooperatively (deadline or operator interrupt)."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message, category=ErrorCategory.CANCELLATION)
