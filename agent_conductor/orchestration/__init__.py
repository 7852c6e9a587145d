"""
Task orchestration engine for Agent Conductor.

This package provides:
- Task orchestration with dependency resolution and concurrency limits
- Load balancing across agents with pluggable selection strategies
- Agent registry with rolling performance metrics and health monitoring
"""

from .orchestrator import (
    TaskOrchestrator,
    TaskEventTracker,
)

from .load_balancer import LoadBalancer

from .registry import (
    AgentRegistry,
    HealthMonitor,
    always_live,
)

from .strategies import (
    SelectionStrategy,
    RoundRobinStrategy,
    WeightedStrategy,
    LeastConnectionsStrategy,
    ResponseTimeStrategy,
    create_strategy,
)

__all__ = [
    # Orchestrator components
    'TaskOrchestrator',
    'TaskEventTracker',

    # Load balancing
    'LoadBalancer',
    'SelectionStrategy',
    'RoundRobinStrategy',
    'WeightedStrategy',
    'LeastConnectionsStrategy',
    'ResponseTimeStrategy',
    'create_strategy',

    # Registry components
    'AgentRegistry',
    'HealthMonitor',
    'always_live',
]
