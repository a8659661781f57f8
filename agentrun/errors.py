"""
Error taxonomy for the execution engine.

Every error carries a stable ``code`` plus the offending provider or tool
name (when there is one) so callers can log and alert on structure rather
than message text.

Recoverable errors (``ToolError`` and subclasses) are turned into tool
result messages by the orchestrator and never reach the caller.  Everything
else aborts the run.
"""

from __future__ import annotations

from typing import Any


class ErrorCode:
    CONFIGURATION_ERROR = "configuration_error"
    DUPLICATE_TOOL_NAME = "duplicate_tool_name"
    PROVIDER_ERROR = "provider_error"
    PROVIDER_TIMEOUT = "provider_timeout"
    PROVIDER_RATE_LIMITED = "provider_rate_limited"
    INCOMPLETE_STREAM = "incomplete_stream"
    TOOL_ERROR = "tool_error"
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    HANDLER_ERROR = "handler_error"
    TOOL_TIMEOUT = "tool_timeout"
    INVARIANT_VIOLATION = "invariant_violation"
    ITERATION_LIMIT_EXCEEDED = "iteration_limit_exceeded"
    CANCELLED = "cancelled"
    INVALID_STATE = "invalid_state"
    BUSY = "busy"


class AgentError(Exception):
    """Base class for all engine errors."""

    code: str = "agent_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        tool: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.tool = tool
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.provider is not None:
            d["provider"] = self.provider
        if self.tool is not None:
            d["tool"] = self.tool
        return d


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(AgentError):
    code = ErrorCode.CONFIGURATION_ERROR


class DuplicateToolName(ConfigurationError):
    code = ErrorCode.DUPLICATE_TOOL_NAME

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool already registered: {name}", tool=name)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class ProviderError(AgentError):
    """
    A Model Backend call failed.

    ``transient`` marks failures worth retrying (timeouts, rate limits,
    5xx responses, dropped connections).
    """

    code = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        transient: bool = False,
        status_code: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, provider=provider, cause=cause)
        self.transient = transient
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["transient"] = self.transient
        if self.status_code is not None:
            d["status_code"] = self.status_code
        return d


class ProviderTimeout(ProviderError):
    code = ErrorCode.PROVIDER_TIMEOUT

    def __init__(self, provider: str | None, timeout: float) -> None:
        super().__init__(
            f"Provider call timed out after {timeout}s",
            provider=provider,
            transient=True,
        )
        self.timeout = timeout


class ProviderRateLimited(ProviderError):
    code = ErrorCode.PROVIDER_RATE_LIMITED

    def __init__(
        self, provider: str | None, retry_after: float | None = None
    ) -> None:
        super().__init__(
            f"Rate limited by {provider or 'provider'}",
            provider=provider,
            transient=True,
            status_code=429,
        )
        self.retry_after = retry_after


class IncompleteStream(ProviderError):
    code = ErrorCode.INCOMPLETE_STREAM

    def __init__(self, provider: str | None = None) -> None:
        super().__init__(
            "Stream ended without a completion marker",
            provider=provider,
        )


# ---------------------------------------------------------------------------
# Tools (recoverable)
# ---------------------------------------------------------------------------


class ToolError(AgentError):
    code = ErrorCode.TOOL_ERROR


class UnknownTool(ToolError):
    code = ErrorCode.UNKNOWN_TOOL

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}", tool=name)


class InvalidArguments(ToolError):
    code = ErrorCode.INVALID_ARGUMENTS

    def __init__(self, name: str, violations: list[str]) -> None:
        super().__init__(
            f"Invalid arguments for {name}: " + "; ".join(violations),
            tool=name,
        )
        self.violations = list(violations)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["violations"] = list(self.violations)
        return d


class HandlerError(ToolError):
    code = ErrorCode.HANDLER_ERROR


class ToolTimeout(HandlerError):
    code = ErrorCode.TOOL_TIMEOUT

    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"Tool timed out after {timeout}s", tool=name)
        self.timeout = timeout


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------


class InvariantViolation(AgentError):
    code = ErrorCode.INVARIANT_VIOLATION


class IterationLimitExceeded(AgentError):
    code = ErrorCode.ITERATION_LIMIT_EXCEEDED

    def __init__(self, max_iterations: int, provider: str | None = None) -> None:
        super().__init__(
            f"Reached maximum of {max_iterations} model calls in one run",
            provider=provider,
        )
        self.max_iterations = max_iterations


class RunCancelled(AgentError):
    """
    Terminal *Cancelled* outcome.

    Hooks raise it from a ``before_*`` extension point to abort the run;
    the orchestrator raises it to the caller when a cancellation token
    fires.
    """

    code = ErrorCode.CANCELLED

    def __init__(self, reason: str = "Run cancelled") -> None:
        super().__init__(reason)


class InvalidState(AgentError):
    code = ErrorCode.INVALID_STATE


class OrchestratorBusy(InvalidState):
    code = ErrorCode.BUSY

    def __init__(self) -> None:
        super().__init__("Another run is already in progress on this orchestrator")
