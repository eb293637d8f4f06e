"""
Agent Fabric - Error Hierarchy

Structured errors for the runtime layer. Every error carries a code, a
severity and a suggested recovery strategy so that the orchestration layer
can decide whether to retry, fall back or abort.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"           # Informational, can be ignored
    MEDIUM = "medium"     # Should be logged, may affect results
    HIGH = "high"         # Requires attention, operation failed
    CRITICAL = "critical" # Process cannot run agents


class RecoveryStrategy(Enum):
    """Suggested recovery strategies for errors."""

    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    SKIP = "skip"
    ABORT = "abort"
    FALLBACK = "fallback"
    RESET = "reset"               # Re-provision the agent environment


@dataclass
class ErrorContext:
    """Context attached to an error for reporting."""

    timestamp: datetime = field(default_factory=datetime.now)
    agent_id: str | None = None
    runtime: str | None = None
    operation: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "agent_id": self.agent_id,
            "runtime": self.runtime,
            "operation": self.operation,
            "details": self.details,
        }


class FabricError(Exception):
    """
    Base exception for all runtime layer errors.

    Provides structured error information including severity,
    recovery strategy suggestions, and context.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "FABRIC_ERROR",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        recovery: RecoveryStrategy = RecoveryStrategy.ABORT,
        recoverable: bool = True,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.recovery = recovery
        self.recoverable = recoverable
        self.context = context or ErrorContext()
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "recovery_strategy": self.recovery.value,
            "recoverable": self.recoverable,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code!r}, "
            f"message={self.message!r}, "
            f"severity={self.severity.value})"
        )


# ============================================================================
# Runtime selection errors
# ============================================================================


class BackendUnavailableError(FabricError):
    """No usable isolation backend, or the requested one is unavailable."""

    def __init__(self, message: str, *, runtime: str | None = None, **kwargs: Any) -> None:
        context = kwargs.pop("context", None) or ErrorContext()
        context.runtime = runtime
        super().__init__(
            message,
            code="BACKEND_UNAVAILABLE",
            severity=ErrorSeverity.CRITICAL,
            recovery=RecoveryStrategy.FALLBACK,
            recoverable=False,
            context=context,
            **kwargs,
        )
        self.runtime = runtime


class SelectionError(FabricError):
    """The selected backend could not be initialized."""

    def __init__(self, runtime: str, reason: str, **kwargs: Any) -> None:
        super().__init__(
            f"Failed to initialize runtime '{runtime}': {reason}",
            code="SELECTION_FAILED",
            severity=ErrorSeverity.CRITICAL,
            recovery=RecoveryStrategy.ABORT,
            recoverable=False,
            context=ErrorContext(runtime=runtime, operation="initialize"),
            **kwargs,
        )
        self.runtime = runtime


class NotInitializedError(FabricError):
    """A lifecycle call was made before initialize() completed."""

    def __init__(self, operation: str | None = None) -> None:
        message = "Runtime manager not initialized"
        if operation:
            message = f"{message} (called {operation})"
        super().__init__(
            message,
            code="NOT_INITIALIZED",
            severity=ErrorSeverity.HIGH,
            recovery=RecoveryStrategy.ABORT,
            recoverable=False,
            context=ErrorContext(operation=operation),
        )


# ============================================================================
# Agent errors
# ============================================================================


class AgentError(FabricError):
    """Errors related to a single agent."""

    def __init__(
        self,
        message: str,
        *,
        agent_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", None) or ErrorContext()
        context.agent_id = agent_id
        kwargs.setdefault("code", "AGENT_ERROR")
        super().__init__(message, context=context, **kwargs)
        self.agent_id = agent_id


class UnknownAgentError(AgentError):
    """No live session exists for the agent id."""

    def __init__(self, agent_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"Agent not found: {agent_id}",
            agent_id=agent_id,
            code="UNKNOWN_AGENT",
            severity=ErrorSeverity.HIGH,
            recovery=RecoveryStrategy.ABORT,
            recoverable=False,
            **kwargs,
        )


class DuplicateAgentError(AgentError):
    """An agent with the same id is still alive."""

    def __init__(self, agent_id: str, runtime: str | None = None, **kwargs: Any) -> None:
        where = f" in runtime '{runtime}'" if runtime else ""
        super().__init__(
            f"Agent {agent_id} already exists{where}",
            agent_id=agent_id,
            code="DUPLICATE_AGENT",
            severity=ErrorSeverity.HIGH,
            recovery=RecoveryStrategy.ABORT,
            recoverable=False,
            **kwargs,
        )


class ProvisionError(AgentError):
    """The isolated environment could not be created."""

    def __init__(self, agent_id: str, reason: str, **kwargs: Any) -> None:
        super().__init__(
            f"Failed to provision agent {agent_id}: {reason}",
            agent_id=agent_id,
            code="PROVISION_FAILED",
            severity=ErrorSeverity.HIGH,
            recovery=RecoveryStrategy.RETRY_WITH_BACKOFF,
            **kwargs,
        )
        self.reason = reason


class CommandTimeoutError(AgentError):
    """A command exceeded its timeout."""

    def __init__(self, agent_id: str, command: str, timeout: float, **kwargs: Any) -> None:
        super().__init__(
            f"Command in agent {agent_id} timed out after {timeout:g}s: {command}",
            agent_id=agent_id,
            code="COMMAND_TIMEOUT",
            severity=ErrorSeverity.HIGH,
            recovery=RecoveryStrategy.RETRY,
            **kwargs,
        )
        self.command = command
        self.timeout = timeout


class CommandCancelledError(AgentError):
    """A command was aborted because its agent was destroyed."""

    def __init__(self, agent_id: str, command: str, **kwargs: Any) -> None:
        super().__init__(
            f"Command in agent {agent_id} aborted by destruction: {command}",
            agent_id=agent_id,
            code="COMMAND_CANCELLED",
            severity=ErrorSeverity.MEDIUM,
            recovery=RecoveryStrategy.SKIP,
            recoverable=False,
            **kwargs,
        )
        self.command = command


class InvalidStateError(AgentError):
    """An agent was asked to make an illegal state transition."""

    def __init__(self, agent_id: str, current: str, target: str, **kwargs: Any) -> None:
        super().__init__(
            f"Agent {agent_id} cannot move from {current} to {target}",
            agent_id=agent_id,
            code="INVALID_STATE",
            severity=ErrorSeverity.MEDIUM,
            recovery=RecoveryStrategy.RESET,
            **kwargs,
        )
        self.current = current
        self.target = target


# ============================================================================
# Non-fatal records
# ============================================================================


@dataclass
class ConfigurationWarning:
    """
    A post-provision configuration step that failed.

    Not raised. Collected on the AgentSession so callers can inspect
    an agent that is usable but running with a degraded environment.
    """

    agent_id: str
    step: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "step": self.step,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"{self.step}: {self.message}"
