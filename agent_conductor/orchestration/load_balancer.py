"""
Load balancer for Agent Conductor.

Selects an eligible agent for each unit of work, tracks per-agent outcome
statistics through the registry, and runs periodic health checks.
"""

import asyncio
import threading
import time
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Optional, Union

from ..models.core import (
    AgentDescriptor, AgentHealth, BalancerStats, ExecutionOutcome,
    ExecutionRequest, TaskPriority
)
from ..models.errors import (
    AgentUnavailableError, ConductorError, ExecutionError,
    ExecutionTimeoutError, NoAgentAvailableError
)
from ..utils.callbacks import invoke_callback
from ..utils.config import BalancingStrategyName, LoadBalancerConfig
from ..utils.logging import get_logger
from ..utils.retry import RetryConfig, retry_async
from .registry import AgentRegistry, HealthMonitor, ProbeFn
from .strategies import SelectionStrategy, create_strategy

logger = get_logger(__name__)

ExecutorFn = Callable[[AgentDescriptor], Any]

# Priorities that avoid degraded agents whenever a healthy one qualifies
_PREFER_HEALTHY = frozenset({TaskPriority.CRITICAL, TaskPriority.HIGH})


class LoadBalancer:
    """
    Balances work across registered agents.

    Selection and the matching load increment happen under one lock, so two
    concurrent requests never both see an agent as idle.
    """

    def __init__(
        self,
        strategy: Union[str, BalancingStrategyName, SelectionStrategy, None] = None,
        config: Optional[LoadBalancerConfig] = None,
        registry: Optional[AgentRegistry] = None,
        probe: Optional[ProbeFn] = None
    ):
        self.config = config or LoadBalancerConfig()
        self.strategy = create_strategy(strategy if strategy is not None else self.config.strategy)
        self.registry = registry or AgentRegistry(
            metrics_window=self.config.metrics_window,
            degrade_after_failures=self.config.degrade_after_failures,
            unhealthy_threshold=self.config.health.unhealthy_threshold,
        )
        self.health_monitor = HealthMonitor(self.registry, probe, self.config.health)
        self.logger = get_logger(f"{__name__}.LoadBalancer", strategy=self.strategy.name)

        self._retry_config = RetryConfig(
            max_retries=self.config.max_agent_retries,
            base_delay=self.config.agent_retry_delay_seconds,
            max_delay=max(1.0, self.config.agent_retry_delay_seconds),
            jitter=False,
        )
        self._selection_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._total_requests = 0
        self._successful_requests = 0
        self._failed_requests = 0
        self._response_time_total_ms = 0.0
        self._response_samples = 0

    # Registration

    def register_agent(self, descriptor: Union[AgentDescriptor, Mapping[str, Any]]) -> AgentDescriptor:
        """Add an agent to the pool. Idempotent on id."""
        return self.registry.register(descriptor)

    def register_agents(self, descriptors: Iterable[Union[AgentDescriptor, Mapping[str, Any]]]) -> List[AgentDescriptor]:
        return [self.register_agent(d) for d in descriptors]

    # Selection

    def select_agent(
        self,
        required_capabilities: Iterable[str] = (),
        priority: TaskPriority = TaskPriority.MEDIUM,
        exclude: Collection[str] = ()
    ) -> Optional[AgentDescriptor]:
        """
        Select an eligible agent for the given requirement.

        Args:
            required_capabilities: Capabilities the agent must declare
            priority: Priority of the work; critical and high work prefers
                healthy agents over degraded ones
            exclude: Agent ids to leave out

        Returns:
            A copy of the selected agent, or None when no agent qualifies
        """
        with self._selection_lock:
            return self._select_locked(frozenset(required_capabilities), TaskPriority(priority), exclude)

    def _select_locked(
        self,
        required: frozenset,
        priority: TaskPriority,
        exclude: Collection[str]
    ) -> Optional[AgentDescriptor]:
        candidates = [
            agent for agent in self.registry.list_agents()
            if agent.id not in exclude and agent.is_eligible(required)
        ]
        if not candidates:
            return None

        if priority in _PREFER_HEALTHY:
            healthy = [a for a in candidates if a.health == AgentHealth.HEALTHY]
            if healthy:
                candidates = healthy

        return self.strategy.choose(candidates)

    def _acquire_agent(self, request: ExecutionRequest, tried: List[str]) -> Optional[AgentDescriptor]:
        with self._selection_lock:
            agent = self._select_locked(request.capabilities, request.priority, tried)
            if agent is None and tried:
                # Every eligible agent has been tried once; allow a second pass
                agent = self._select_locked(request.capabilities, request.priority, ())
            if agent is not None:
                self.registry.begin_execution(agent.id)
            return agent

    # Execution

    async def execute_task(
        self,
        request: Union[ExecutionRequest, Mapping[str, Any]],
        executor_fn: ExecutorFn
    ) -> ExecutionOutcome:
        """
        Run ``executor_fn(agent)`` on a selected agent.

        If the callback raises AgentUnavailableError another agent is selected,
        up to ``max_agent_retries`` times. Any other error propagates at once.

        Raises:
            NoAgentAvailableError: No eligible agent exists
            ExecutionTimeoutError: The callback exceeded the request deadline
            ExecutionError: The callback raised
        """
        if not isinstance(request, ExecutionRequest):
            request = ExecutionRequest.model_validate(request)

        with self._stats_lock:
            self._total_requests += 1
        tried: List[str] = []

        async def attempt() -> ExecutionOutcome:
            agent = self._acquire_agent(request, tried)
            if agent is None:
                raise NoAgentAvailableError(request.capabilities, task_id=request.task_id)
            tried.append(agent.id)
            return await self._run_on_agent(agent, request, executor_fn)

        def on_retry(attempt_number: int, error: BaseException) -> None:
            self.logger.warning(
                "Agent unavailable, selecting another",
                task_id=request.task_id,
                agent_id=tried[-1] if tried else None,
                attempt=attempt_number + 1,
                error=str(error),
            )

        try:
            outcome = await retry_async(
                attempt,
                self._retry_config,
                error_types=(AgentUnavailableError,),
                on_retry=on_retry,
            )
        except Exception:
            with self._stats_lock:
                self._failed_requests += 1
            raise

        with self._stats_lock:
            self._successful_requests += 1
        return outcome

    async def _run_on_agent(
        self,
        agent: AgentDescriptor,
        request: ExecutionRequest,
        executor_fn: ExecutorFn
    ) -> ExecutionOutcome:
        self.logger.debug("Dispatching to agent", task_id=request.task_id, agent_id=agent.id)
        start_time = time.monotonic()
        success = False

        async def call() -> Any:
            # Callback errors are wrapped here so that only the deadline
            # below can surface as a TimeoutError
            try:
                return await invoke_callback(executor_fn, agent)
            except ConductorError as e:
                e.context.setdefault("agent_id", agent.id)
                raise
            except Exception as e:
                raise ExecutionError(
                    str(e) or type(e).__name__, agent_id=agent.id, task_id=request.task_id,
                    error_type=type(e).__name__
                ) from e

        try:
            if request.timeout_seconds is not None:
                data = await asyncio.wait_for(call(), timeout=request.timeout_seconds)
            else:
                data = await call()
            success = True
        except asyncio.TimeoutError:
            raise ExecutionTimeoutError(
                request.timeout_seconds, agent_id=agent.id, task_id=request.task_id
            ) from None
        finally:
            latency_ms = (time.monotonic() - start_time) * 1000
            self.registry.end_execution(agent.id, success, latency_ms)
            with self._stats_lock:
                self._response_time_total_ms += latency_ms
                self._response_samples += 1

        return ExecutionOutcome(agent_id=agent.id, data=data, execution_time_ms=latency_ms)

    # Health

    async def start_health_checks(self) -> None:
        if self.config.health.enabled:
            await self.health_monitor.start()

    async def stop_health_checks(self) -> None:
        await self.health_monitor.stop()

    async def check_health(self) -> Dict[str, AgentHealth]:
        """Run one probe round immediately."""
        return await self.health_monitor.check_all()

    # Reporting

    def get_stats(self) -> BalancerStats:
        with self._stats_lock:
            average = (
                self._response_time_total_ms / self._response_samples
                if self._response_samples else 0.0
            )
            return BalancerStats(
                total_requests=self._total_requests,
                successful_requests=self._successful_requests,
                failed_requests=self._failed_requests,
                average_response_time_ms=average,
            )

    def get_agent_metrics(self) -> Dict[str, Any]:
        return self.registry.get_registry_status()
