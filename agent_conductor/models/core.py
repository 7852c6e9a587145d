"""
Core Pydantic data models for Agent Conductor.
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, FrozenSet, Iterable, Optional
from datetime import datetime
from enum import Enum


class TaskPriority(str, Enum):
    """Task priority levels."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key, lower runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class TaskState(str, Enum):
    """Lifecycle states of a task."""
    QUEUED = "queued"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED)


# Allowed lifecycle moves. Terminal states have no way out.
TASK_TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.QUEUED: frozenset({TaskState.BLOCKED, TaskState.READY, TaskState.FAILED}),
    TaskState.BLOCKED: frozenset({TaskState.READY, TaskState.FAILED}),
    TaskState.READY: frozenset({TaskState.BLOCKED, TaskState.RUNNING, TaskState.FAILED}),
    TaskState.RUNNING: frozenset({TaskState.SUCCEEDED, TaskState.READY, TaskState.FAILED}),
    TaskState.SUCCEEDED: frozenset(),
    TaskState.FAILED: frozenset(),
}


class TaskKind(str, Enum):
    """Known categories of work."""
    TEXT_GENERATION = "text-generation"
    DATA_ANALYSIS = "data-analysis"
    IMAGE_GENERATION = "image-generation"
    WEB_SEARCH = "web-search"
    CODE_GENERATION = "code-generation"
    SECURITY_SCAN = "security-scan"
    PREDICTION = "prediction"


TASK_KIND_CAPABILITIES: Dict[TaskKind, FrozenSet[str]] = {
    TaskKind.TEXT_GENERATION: frozenset({"text-generation"}),
    TaskKind.DATA_ANALYSIS: frozenset({"data-analysis"}),
    TaskKind.IMAGE_GENERATION: frozenset({"image-generation"}),
    TaskKind.WEB_SEARCH: frozenset({"web-search"}),
    TaskKind.CODE_GENERATION: frozenset({"code-generation"}),
    TaskKind.SECURITY_SCAN: frozenset({"security-scan"}),
    TaskKind.PREDICTION: frozenset({"data-analysis", "prediction"}),
}


def resolve_capabilities(task_type: str, declared: Iterable[str]) -> FrozenSet[str]:
    """
    Resolve the capability requirement of a task.

    Declared capabilities always win. A task that declares none and whose
    type names a known TaskKind inherits the kind's capability set.
    """
    declared = frozenset(declared)
    if declared:
        return declared
    try:
        kind = TaskKind(task_type)
    except ValueError:
        return declared
    return TASK_KIND_CAPABILITIES[kind]


class TaskSpec(BaseModel):
    """What a caller submits. The orchestrator assigns the id."""
    type: str = Field(..., min_length=1)
    priority: TaskPriority = TaskPriority.MEDIUM
    required_capabilities: FrozenSet[str] = Field(default_factory=frozenset)
    payload: Any = None
    dependencies: FrozenSet[str] = Field(default_factory=frozenset)
    timeout_seconds: Optional[float] = Field(None, gt=0)
    max_retries: Optional[int] = Field(None, ge=0)


class Task(BaseModel):
    """A unit of work owned by the orchestrator."""
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., min_length=1, frozen=True)
    type: str = Field(..., min_length=1, frozen=True)
    priority: TaskPriority = Field(TaskPriority.MEDIUM, frozen=True)
    required_capabilities: FrozenSet[str] = Field(default_factory=frozenset, frozen=True)
    payload: Any = Field(None, frozen=True)
    dependencies: FrozenSet[str] = Field(default_factory=frozenset, frozen=True)
    timeout_seconds: float = Field(..., gt=0, frozen=True)
    max_retries: int = Field(..., ge=0, frozen=True)
    submitted_seq: int = Field(..., ge=0, frozen=True)
    created_at: datetime = Field(default_factory=datetime.now, frozen=True)

    state: TaskState = TaskState.QUEUED
    retries_used: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def retries_remaining(self) -> int:
        return self.max_retries - self.retries_used


class AgentHealth(str, Enum):
    """Health classification of an agent."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AgentKind(str, Enum):
    """Role an agent plays in the pool."""
    PRIMARY = "primary"
    SUPPORTING = "supporting"
    SPECIALIZED = "specialized"


class AgentPerformance(BaseModel):
    """Rolling performance metrics for an agent."""
    average_response_time_ms: float = Field(default=0.0, ge=0.0)
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    throughput: float = Field(default=0.0, ge=0.0)
    error_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    total_executions: int = Field(default=0, ge=0)
    successful_executions: int = Field(default=0, ge=0)
    failed_executions: int = Field(default=0, ge=0)


class AgentDescriptor(BaseModel):
    """A registered worker and its live state."""
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    kind: AgentKind = AgentKind.SPECIALIZED
    capabilities: FrozenSet[str] = Field(default_factory=frozenset)
    weight: float = Field(default=1.0, gt=0.0)
    performance: AgentPerformance = Field(default_factory=AgentPerformance)
    resource_load: int = Field(default=0, ge=0)
    health: AgentHealth = AgentHealth.HEALTHY
    consecutive_probe_failures: int = Field(default=0, ge=0)
    consecutive_failures: int = Field(default=0, ge=0)
    last_health_check: Optional[datetime] = None
    registered_at: datetime = Field(default_factory=datetime.now)

    def can_handle(self, required: Iterable[str]) -> bool:
        """True if every required capability is declared by this agent."""
        return frozenset(required) <= self.capabilities

    def is_eligible(self, required: Iterable[str]) -> bool:
        return self.health != AgentHealth.UNHEALTHY and self.can_handle(required)


class ExecutionRequest(BaseModel):
    """What the load balancer needs to place one unit of work."""
    capabilities: FrozenSet[str] = Field(default_factory=frozenset)
    priority: TaskPriority = TaskPriority.MEDIUM
    payload: Any = None
    timeout_seconds: Optional[float] = Field(None, gt=0)
    task_id: Optional[str] = None


class ExecutionOutcome(BaseModel):
    """Successful execution on a selected agent."""
    agent_id: str
    data: Any = None
    execution_time_ms: float = Field(..., ge=0.0)


class TaskResult(BaseModel):
    """Final outcome of a task. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    task_id: str = Field(..., min_length=1)
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    execution_time_ms: float = Field(default=0.0, ge=0.0)
    agent_id: Optional[str] = None
    attempts: int = Field(default=0, ge=0)
    completed_at: datetime = Field(default_factory=datetime.now)


class ResultState(str, Enum):
    """Marker returned by lookups for tasks that are still in flight."""
    PENDING = "pending"


PENDING = ResultState.PENDING


class BalancerStats(BaseModel):
    """Request-level counters of a load balancer."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time_ms: float = 0.0


class OrchestratorStatus(BaseModel):
    """Snapshot of orchestrator counts."""
    queued: int = 0
    running: int = 0
    completed: int = 0
    succeeded: int = 0
    failed: int = 0
    is_running: bool = False
    balancer: BalancerStats = Field(default_factory=BalancerStats)
