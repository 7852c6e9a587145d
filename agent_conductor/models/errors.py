"""
Error taxonomy and exceptions for Agent Conductor.
"""

from typing import Any, Optional
from enum import Enum


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Categories of errors."""
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    SCHEDULING = "scheduling"
    AGENT = "agent"
    EXECUTION = "execution"
    LOOKUP = "lookup"
    SYSTEM = "system"


class ConductorError(Exception):
    """Base exception for Agent Conductor."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.SYSTEM,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, **kwargs: Any):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = kwargs

    def __str__(self) -> str:
        return self.message


class TaskValidationError(ConductorError):
    """Malformed task rejected at submission."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, ErrorCategory.VALIDATION, ErrorSeverity.HIGH, **kwargs)


class DependencyFailedError(ConductorError):
    """A prerequisite task failed terminally."""

    def __init__(self, dependency_id: str, **kwargs: Any):
        super().__init__(
            f"dependency failed: {dependency_id}",
            ErrorCategory.DEPENDENCY,
            ErrorSeverity.MEDIUM,
            dependency_id=dependency_id,
            **kwargs
        )
        self.dependency_id = dependency_id


class NoAgentAvailableError(ConductorError):
    """No healthy agent has the required capabilities."""

    def __init__(self, capabilities, **kwargs: Any):
        required = ", ".join(sorted(capabilities)) or "<any>"
        super().__init__(
            f"no agent available for capabilities [{required}]",
            ErrorCategory.SCHEDULING,
            ErrorSeverity.MEDIUM,
            **kwargs
        )
        self.capabilities = frozenset(capabilities)


class AgentUnavailableError(ConductorError):
    """
    Raised by an execution callback when the selected agent could not accept
    the work at all (refused connection, overloaded, etc).

    The load balancer answers it by selecting a different agent instead of
    failing the attempt.
    """

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, ErrorCategory.AGENT, ErrorSeverity.LOW, **kwargs)


class ExecutionError(ConductorError):
    """The execution callback raised."""

    def __init__(self, message: str, agent_id: Optional[str] = None, **kwargs: Any):
        super().__init__(message, ErrorCategory.EXECUTION, ErrorSeverity.MEDIUM,
                         agent_id=agent_id, **kwargs)
        self.agent_id = agent_id


class ExecutionTimeoutError(ExecutionError):
    """The execution callback exceeded the task deadline."""

    def __init__(self, timeout_seconds: float, agent_id: Optional[str] = None, **kwargs: Any):
        super().__init__(
            f"execution timed out after {timeout_seconds:g}s",
            agent_id=agent_id,
            timeout_seconds=timeout_seconds,
            **kwargs
        )
        self.timeout_seconds = timeout_seconds


class UnknownTaskError(ConductorError, KeyError):
    """Lookup of a task id the orchestrator never issued."""

    def __init__(self, task_id: str):
        super().__init__(f"unknown task: {task_id}", ErrorCategory.LOOKUP,
                         ErrorSeverity.LOW, task_id=task_id)
        self.task_id = task_id


class AgentNotFoundError(ConductorError, KeyError):
    """Lookup of an agent id that is not registered."""

    def __init__(self, agent_id: str):
        super().__init__(f"unknown agent: {agent_id}", ErrorCategory.LOOKUP,
                         ErrorSeverity.LOW, agent_id=agent_id)
        self.agent_id = agent_id


class InvalidTransitionError(ConductorError):
    """A task state change that the lifecycle does not allow."""

    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(
            f"task {task_id} cannot move from {current} to {target}",
            ErrorCategory.SYSTEM,
            ErrorSeverity.CRITICAL,
            task_id=task_id
        )
