"""
Agent Conductor: task orchestration across a pool of AI agents.
"""

from .models.core import (
    AgentDescriptor,
    AgentHealth,
    AgentKind,
    TaskKind,
    TaskPriority,
    TaskResult,
    TaskSpec,
    TaskState,
    PENDING,
)
from .models.errors import (
    AgentUnavailableError,
    ConductorError,
    NoAgentAvailableError,
    TaskValidationError,
    UnknownTaskError,
)
from .orchestration import LoadBalancer, TaskOrchestrator
from .utils.config import (
    LoadBalancerConfig,
    OrchestrationConfig,
    SystemConfig,
)

__version__ = "0.1.0"

__all__ = [
    'AgentDescriptor',
    'AgentHealth',
    'AgentKind',
    'TaskKind',
    'TaskPriority',
    'TaskResult',
    'TaskSpec',
    'TaskState',
    'PENDING',
    'AgentUnavailableError',
    'ConductorError',
    'NoAgentAvailableError',
    'TaskValidationError',
    'UnknownTaskError',
    'LoadBalancer',
    'TaskOrchestrator',
    'LoadBalancerConfig',
    'OrchestrationConfig',
    'SystemConfig',
]
