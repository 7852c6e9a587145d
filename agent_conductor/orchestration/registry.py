"""
Agent registry and health monitoring for Agent Conductor.

The registry is the only owner of agent state. Everything else reads
copies and goes through the update methods below.
"""

import asyncio
import threading
import time
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, NamedTuple, Optional, Union

from ..models.core import AgentDescriptor, AgentHealth, AgentPerformance
from ..models.errors import AgentNotFoundError
from ..utils.callbacks import invoke_callback
from ..utils.config import HealthCheckConfig
from ..utils.logging import get_logger

logger = get_logger(__name__)

ProbeFn = Callable[[AgentDescriptor], Union[bool, Awaitable[bool]]]


class _Outcome(NamedTuple):
    finished_at: float
    success: bool
    latency_ms: float


async def always_live(agent: AgentDescriptor) -> bool:
    """Default probe: every registered agent answers."""
    return True


class AgentRegistry:
    """
    Source of truth for agent descriptors and their live metrics.

    Agents are kept in registration order. All writes take the registry lock,
    so concurrent executions against the same agent never interleave a
    read-modify-write of its counters.
    """

    def __init__(
        self,
        metrics_window: int = 50,
        degrade_after_failures: int = 3,
        unhealthy_threshold: int = 3
    ):
        self.metrics_window = metrics_window
        self.degrade_after_failures = degrade_after_failures
        self.unhealthy_threshold = unhealthy_threshold
        self._agents: Dict[str, AgentDescriptor] = {}
        self._windows: Dict[str, Deque[_Outcome]] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(f"{__name__}.AgentRegistry")

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def register(self, descriptor: Union[AgentDescriptor, Mapping[str, Any]]) -> AgentDescriptor:
        """
        Add an agent to the pool.

        Registering an id that is already known is a no-op and returns the
        existing agent, live metrics included.
        """
        if not isinstance(descriptor, AgentDescriptor):
            descriptor = AgentDescriptor.model_validate(descriptor)

        with self._lock:
            existing = self._agents.get(descriptor.id)
            if existing is not None:
                self.logger.debug("Agent already registered", agent_id=descriptor.id)
                return existing.model_copy(deep=True)

            self._agents[descriptor.id] = descriptor.model_copy(deep=True)
            self._windows[descriptor.id] = deque(maxlen=self.metrics_window)

        self.logger.info(
            "Registered agent",
            agent_id=descriptor.id,
            name=descriptor.name,
            capabilities=sorted(descriptor.capabilities),
        )
        return descriptor.model_copy(deep=True)

    def get(self, agent_id: str) -> AgentDescriptor:
        """Return a copy of one agent's descriptor."""
        with self._lock:
            return self._require(agent_id).model_copy(deep=True)

    def list_agents(self) -> List[AgentDescriptor]:
        """Return copies of all agents in registration order."""
        with self._lock:
            return [agent.model_copy(deep=True) for agent in self._agents.values()]

    def agent_ids(self) -> List[str]:
        with self._lock:
            return list(self._agents)

    def begin_execution(self, agent_id: str) -> None:
        """Count one more outstanding execution against an agent."""
        with self._lock:
            agent = self._require(agent_id)
            agent.resource_load += 1

    def end_execution(self, agent_id: str, success: bool, latency_ms: float) -> None:
        """Release an outstanding execution and record how it went."""
        with self._lock:
            agent = self._require(agent_id)
            agent.resource_load = max(0, agent.resource_load - 1)
            self._record_outcome_locked(agent, success, latency_ms)

    def record_outcome(self, agent_id: str, success: bool, latency_ms: float) -> None:
        """Record an execution outcome without touching the outstanding count."""
        with self._lock:
            self._record_outcome_locked(self._require(agent_id), success, latency_ms)

    def record_probe(self, agent_id: str, success: bool) -> AgentHealth:
        """
        Apply a health probe result.

        One success restores the agent to healthy. Failures degrade it, and
        ``unhealthy_threshold`` consecutive failures make it unhealthy.
        """
        with self._lock:
            agent = self._require(agent_id)
            previous = agent.health
            agent.last_health_check = datetime.now()

            if success:
                agent.consecutive_probe_failures = 0
                agent.health = AgentHealth.HEALTHY
            else:
                agent.consecutive_probe_failures += 1
                if agent.consecutive_probe_failures >= self.unhealthy_threshold:
                    agent.health = AgentHealth.UNHEALTHY
                elif agent.health == AgentHealth.HEALTHY:
                    agent.health = AgentHealth.DEGRADED
            current = agent.health
            failures = agent.consecutive_probe_failures

        if current != previous:
            log = self.logger.info if current == AgentHealth.HEALTHY else self.logger.warning
            log(
                "Agent health changed",
                agent_id=agent_id,
                previous=previous.value,
                current=current.value,
                consecutive_probe_failures=failures,
            )
        return current

    def set_health(self, agent_id: str, health: AgentHealth) -> None:
        """Force an agent's health classification."""
        with self._lock:
            agent = self._require(agent_id)
            previous = agent.health
            agent.health = AgentHealth(health)
            if agent.health == AgentHealth.HEALTHY:
                agent.consecutive_probe_failures = 0
                agent.consecutive_failures = 0

        if previous != health:
            self.logger.info(
                "Agent health set",
                agent_id=agent_id,
                previous=previous.value,
                current=AgentHealth(health).value,
            )

    def get_registry_status(self) -> Dict[str, Any]:
        """Get overall registry status and statistics."""
        with self._lock:
            agents = list(self._agents.values())
            return {
                "total_agents": len(agents),
                "healthy_agents": sum(1 for a in agents if a.health == AgentHealth.HEALTHY),
                "degraded_agents": sum(1 for a in agents if a.health == AgentHealth.DEGRADED),
                "unhealthy_agents": sum(1 for a in agents if a.health == AgentHealth.UNHEALTHY),
                "outstanding_executions": sum(a.resource_load for a in agents),
                "agents": {
                    a.id: {
                        "name": a.name,
                        "health": a.health.value,
                        "resource_load": a.resource_load,
                        "average_response_time_ms": a.performance.average_response_time_ms,
                        "success_rate": a.performance.success_rate,
                        "error_rate": a.performance.error_rate,
                        "throughput": a.performance.throughput,
                        "total_executions": a.performance.total_executions,
                        "last_health_check": a.last_health_check.isoformat() if a.last_health_check else None,
                    }
                    for a in agents
                },
            }

    def _require(self, agent_id: str) -> AgentDescriptor:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def _record_outcome_locked(self, agent: AgentDescriptor, success: bool, latency_ms: float) -> None:
        window = self._windows[agent.id]
        window.append(_Outcome(time.monotonic(), success, max(0.0, latency_ms)))

        perf = agent.performance
        total = perf.total_executions + 1
        successes = perf.successful_executions + (1 if success else 0)
        failures = perf.failed_executions + (0 if success else 1)

        window_successes = sum(1 for o in window if o.success)
        span = window[-1].finished_at - window[0].finished_at

        agent.performance = AgentPerformance(
            average_response_time_ms=sum(o.latency_ms for o in window) / len(window),
            success_rate=window_successes / len(window),
            error_rate=1.0 - window_successes / len(window),
            throughput=len(window) / max(span, 1.0),
            total_executions=total,
            successful_executions=successes,
            failed_executions=failures,
        )

        if success:
            agent.consecutive_failures = 0
            if agent.health == AgentHealth.DEGRADED and agent.consecutive_probe_failures == 0:
                agent.health = AgentHealth.HEALTHY
                self.logger.info("Agent recovered after successful execution", agent_id=agent.id)
        else:
            agent.consecutive_failures += 1
            if (agent.health == AgentHealth.HEALTHY
                    and agent.consecutive_failures >= self.degrade_after_failures):
                agent.health = AgentHealth.DEGRADED
                self.logger.warning(
                    "Agent degraded after repeated execution failures",
                    agent_id=agent.id,
                    consecutive_failures=agent.consecutive_failures,
                )


class HealthMonitor:
    """Periodically probes every registered agent."""

    def __init__(
        self,
        registry: AgentRegistry,
        probe: Optional[ProbeFn] = None,
        config: Optional[HealthCheckConfig] = None
    ):
        self.registry = registry
        self.probe = probe or always_live
        self.config = config or HealthCheckConfig()
        self.logger = get_logger(f"{__name__}.HealthMonitor")
        self._running = False
        self._health_check_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the health checking background task."""
        if self._running:
            return

        self._running = True
        self._health_check_task = asyncio.create_task(self._health_check_loop())
        self.logger.info("Health monitor started", interval_seconds=self.config.interval_seconds)

    async def stop(self) -> None:
        """Stop the health checking background task."""
        if not self._running:
            return

        self._running = False
        if self._health_check_task:
            self._health_check_task.cancel()
            try:
                await self._health_check_task
            except asyncio.CancelledError:
                pass
            self._health_check_task = None
        self.logger.info("Health monitor stopped")

    async def _health_check_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.interval_seconds)
            try:
                await self.check_all()
            except Exception as e:
                self.logger.error("Health check round failed", error=str(e))

    async def check_all(self) -> Dict[str, AgentHealth]:
        """Probe every agent once, concurrently."""
        agent_ids = self.registry.agent_ids()
        results = await asyncio.gather(*(self.check_agent(agent_id) for agent_id in agent_ids))
        return dict(zip(agent_ids, results))

    async def check_agent(self, agent_id: str) -> AgentHealth:
        """Probe one agent and fold the result into its health."""
        agent = self.registry.get(agent_id)
        start_time = time.monotonic()

        try:
            alive = bool(await asyncio.wait_for(
                invoke_callback(self.probe, agent),
                timeout=self.config.probe_timeout_seconds
            ))
        except asyncio.TimeoutError:
            self.logger.warning("Health probe timed out", agent_id=agent_id)
            alive = False
        except Exception as e:
            self.logger.warning("Health probe raised", agent_id=agent_id, error=str(e))
            alive = False

        check_time_ms = (time.monotonic() - start_time) * 1000
        self.logger.debug(
            "Health probe finished",
            agent_id=agent_id,
            alive=alive,
            duration_ms=round(check_time_ms, 2),
        )
        return self.registry.record_probe(agent_id, alive)
