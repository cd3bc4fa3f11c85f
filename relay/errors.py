"""Error taxonomy for the gateway adapter layer.

Recovered locally (logged, never escape their module):
  SchemaTranslationFallback, ToolExecutionError

Surfaced to the caller as a typed failure:
  ProviderWireError, ConfigurationError, RunAborted, RunTimedOut,
  TranscriptInvariantViolation
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all gateway errors."""


class SchemaTranslationFallback(RelayError):
    """A schema node could not be represented and was widened to Any."""

    def __init__(self, node: object, reason: str) -> None:
        super().__init__(f"{reason}: {node!r}")
        self.node = node
        self.reason = reason


class ToolExecutionError(RelayError):
    """A tool executor failed. Converted to an "Error: ..." tool result."""

    def __init__(self, tool_name: str, cause: BaseException) -> None:
        super().__init__(f"{tool_name}: {cause}")
        self.tool_name = tool_name
        self.cause = cause


class ProviderWireError(RelayError):
    """The remote provider rejected or broke the request.

    transient=True marks rate limits, overloads, server errors and
    network failures; False means the request itself is structurally
    unsupported (bad wire format, auth, invalid params).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.transient = transient

    @staticmethod
    def is_transient_status(status_code: int) -> bool:
        return status_code in (408, 409, 429, 529) or status_code >= 500


class ConfigurationError(RelayError):
    """An unsupported combination was requested. Raised before any network call."""


class RunAborted(RelayError):
    """The run was cancelled through its abort signal."""

    def __init__(self, reason: object = None) -> None:
        super().__init__(f"run aborted: {reason}" if reason is not None else "run aborted")
        self.reason = reason


class RunTimedOut(RunAborted):
    """The run was cancelled because it exceeded its time budget."""

    def __init__(self, reason: object = "timeout") -> None:
        super().__init__(reason)


class TranscriptInvariantViolation(RelayError):
    """Turn-ordering or tool pairing is broken beyond best-effort repair."""
