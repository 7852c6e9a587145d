"""
Pytest configuration and fixtures for Agent Conductor tests.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import pytest
import structlog

from agent_conductor.models.core import AgentDescriptor, Task, TaskState
from agent_conductor.orchestration.load_balancer import LoadBalancer
from agent_conductor.orchestration.orchestrator import TaskOrchestrator
from agent_conductor.utils.config import (
    HealthCheckConfig, LoadBalancerConfig, OrchestrationConfig
)


@pytest.fixture
def agent_specs() -> List[Dict[str, Any]]:
    """Three agents with overlapping capabilities."""
    return [
        {"id": "agent-a", "name": "Primary", "kind": "primary",
         "capabilities": ["text-generation", "data-analysis", "web-search"]},
        {"id": "agent-b", "name": "Support", "kind": "supporting",
         "capabilities": ["text-generation", "data-analysis"]},
        {"id": "agent-c", "name": "Analyzer",
         "capabilities": ["data-analysis", "pattern-recognition"]},
    ]


@pytest.fixture
def balancer_config() -> LoadBalancerConfig:
    """Balancer config with periodic health checks switched off."""
    return LoadBalancerConfig(
        agent_retry_delay_seconds=0.0,
        health=HealthCheckConfig(enabled=False),
    )


@pytest.fixture
def load_balancer(agent_specs, balancer_config) -> LoadBalancer:
    balancer = LoadBalancer(config=balancer_config)
    balancer.register_agents(agent_specs)
    return balancer


class RecordingExecutor:
    """
    Execution callback that records every call.

    ``fail_times`` makes the first N calls raise; ``delay`` simulates work.
    """

    def __init__(self, delay: float = 0.0, fail_times: int = 0, result: Any = "ok"):
        self.delay = delay
        self.fail_times = fail_times
        self.result = result
        self.calls: List[tuple] = []

    async def __call__(self, task: Task, agent: AgentDescriptor) -> Any:
        self.calls.append((task.id, agent.id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.calls) <= self.fail_times:
            raise RuntimeError(f"boom #{len(self.calls)}")
        return {"task": task.id, "agent": agent.id, "value": self.result}

    def calls_for(self, task_id: str) -> List[str]:
        return [agent_id for tid, agent_id in self.calls if tid == task_id]


class TransitionLog:
    """Listener that keeps every transition and the peak number of running tasks."""

    def __init__(self):
        self.transitions: List[tuple] = []
        self.running = 0
        self.peak_running = 0

    def __call__(self, task: Task, old: TaskState, new: TaskState) -> None:
        self.transitions.append((task.id, old, new))
        if new == TaskState.RUNNING:
            self.running += 1
            self.peak_running = max(self.peak_running, self.running)
        elif old == TaskState.RUNNING:
            self.running -= 1

    def index_of(self, task_id: str, state: TaskState) -> Optional[int]:
        for i, (tid, _, new) in enumerate(self.transitions):
            if tid == task_id and new == state:
                return i
        return None

    def states_of(self, task_id: str) -> List[TaskState]:
        return [new for tid, _, new in self.transitions if tid == task_id]


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def make_executor():
    """Factory for RecordingExecutor with custom behaviour."""
    return RecordingExecutor


@pytest.fixture
def transition_log() -> TransitionLog:
    return TransitionLog()


@pytest.fixture
def make_orchestrator(agent_specs, balancer_config, transition_log):
    """Factory for orchestrators wired to the shared transition log."""

    def factory(
        executor,
        agents: Optional[List[Dict[str, Any]]] = None,
        strategy: str = "least-connections",
        **config: Any
    ) -> TaskOrchestrator:
        config.setdefault("task_timeout_seconds", 5.0)
        config.setdefault("max_retries", 0)
        balancer = LoadBalancer(strategy=strategy, config=balancer_config)
        orchestrator = TaskOrchestrator(
            executor,
            agents=agent_specs if agents is None else agents,
            config=OrchestrationConfig(**config),
            load_balancer=balancer,
        )
        orchestrator.add_listener(transition_log)
        return orchestrator

    return factory


@pytest.fixture
def restore_logging():
    """Undo logging configuration applied during a test."""
    root = logging.getLogger()
    level = root.level
    yield root
    root.setLevel(level)
    structlog.reset_defaults()
