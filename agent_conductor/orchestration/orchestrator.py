"""
Task orchestration for Agent Conductor.

This module owns the task queue, the dependency graph and the concurrency
budget. Ready tasks are handed to the load balancer for agent selection and
executed through a caller-supplied callback.

All orchestrator state lives on one asyncio event loop. The dispatcher
coroutine sleeps until something changes (a submission, a finished attempt,
a retry becoming due) and then scans the pending tasks once.
"""

import asyncio
import bisect
import itertools
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from ..models.core import (
    PENDING, TASK_TRANSITIONS, AgentDescriptor, ExecutionOutcome, ExecutionRequest,
    OrchestratorStatus, ResultState, Task, TaskResult, TaskSpec, TaskState,
    resolve_capabilities
)
from ..models.errors import (
    ConductorError, DependencyFailedError, ExecutionError, InvalidTransitionError,
    TaskValidationError, UnknownTaskError
)
from ..utils.callbacks import invoke_callback
from ..utils.config import OrchestrationConfig, SchedulingPolicy, SystemConfig, get_config
from ..utils.logging import bind_task_context, configure_from_config, get_logger
from .load_balancer import LoadBalancer
from .registry import ProbeFn

logger = get_logger(__name__)

ExecuteFn = Callable[[Task, AgentDescriptor], Any]
TransitionListener = Callable[[Task, TaskState, TaskState], None]


class TaskEventTracker:
    """Fans task state transitions out to registered listeners."""

    def __init__(self):
        self.logger = get_logger(f"{__name__}.TaskEventTracker")
        self._listeners: List[TransitionListener] = []

    def add_listener(self, callback: TransitionListener) -> None:
        """Register a callback for state transitions."""
        self._listeners.append(callback)

    def remove_listener(self, callback: TransitionListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def notify(self, task: Task, old: TaskState, new: TaskState) -> None:
        """Notify every listener. A failing listener never affects the task."""
        if not self._listeners:
            return

        snapshot = task.model_copy()
        for callback in list(self._listeners):
            try:
                callback(snapshot, old, new)
            except Exception as e:
                self.logger.error(
                    "Transition listener failed",
                    task_id=task.id,
                    transition=f"{old.value}->{new.value}",
                    error=str(e),
                )


def _agent_id_of(error: BaseException) -> Optional[str]:
    if isinstance(error, ExecutionError):
        return error.agent_id
    if isinstance(error, ConductorError):
        return error.context.get("agent_id")
    return None


def _error_type_of(error: BaseException) -> str:
    if isinstance(error, ConductorError) and "error_type" in error.context:
        return error.context["error_type"]
    return type(error).__name__


class TaskOrchestrator:
    """
    Coordinates tasks, dependencies and agents.

    Tasks are dispatched in submission order among those whose dependencies
    have all succeeded, up to ``max_concurrent_tasks`` at a time. Failed
    attempts are retried within each task's own budget; a task that fails for
    good fails every task that depends on it.
    """

    def __init__(
        self,
        executor: ExecuteFn,
        agents: Iterable[Union[AgentDescriptor, Mapping[str, Any]]] = (),
        config: Optional[OrchestrationConfig] = None,
        load_balancer: Optional[LoadBalancer] = None,
        probe: Optional[ProbeFn] = None
    ):
        self.config = config or OrchestrationConfig()
        self.load_balancer = load_balancer or LoadBalancer(probe=probe)
        self.events = TaskEventTracker()
        self.logger = get_logger(__name__)
        self._executor = executor

        # Shared state, touched only from the event loop
        self._tasks: Dict[str, Task] = {}
        self._pending: List[str] = []
        self._dependents: Dict[str, List[str]] = defaultdict(list)
        self._results: Dict[str, TaskResult] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._backing_off: Set[str] = set()
        self._done: Dict[str, asyncio.Event] = {}
        self._sequence = itertools.count()

        self._slots = asyncio.Semaphore(self.config.max_concurrent_tasks)
        self._wakeup = asyncio.Event()
        self._is_running = False
        self._dispatcher: Optional[asyncio.Task] = None
        self._monitor: Optional[asyncio.Task] = None

        for agent in agents:
            self.load_balancer.register_agent(agent)

    @classmethod
    def from_config(
        cls,
        executor: ExecuteFn,
        agents: Iterable[Union[AgentDescriptor, Mapping[str, Any]]] = (),
        config: Optional[SystemConfig] = None,
        probe: Optional[ProbeFn] = None
    ) -> "TaskOrchestrator":
        """
        Build an orchestrator and its load balancer from a SystemConfig.

        Also applies the config's logging settings.
        """
        config = config or get_config()
        configure_from_config(config)
        load_balancer = LoadBalancer(config=config.load_balancer, probe=probe)
        return cls(executor, agents, config=config.orchestration, load_balancer=load_balancer)

    @property
    def is_running(self) -> bool:
        return self._is_running

    # Lifecycle

    async def start(self) -> None:
        """Begin draining the queue."""
        if self._is_running:
            return

        self._is_running = True
        await self.load_balancer.start_health_checks()
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        if self.config.enable_monitoring:
            self._monitor = asyncio.create_task(self._monitor_loop())
        self._wakeup.set()
        self.logger.info(
            "Orchestrator started",
            max_concurrent_tasks=self.config.max_concurrent_tasks,
            scheduling_policy=self.config.scheduling_policy.value,
        )

    async def stop(self) -> None:
        """
        Stop dispatching new work.

        Executions already in flight keep running to completion or timeout
        and their results are still recorded.
        """
        if not self._is_running:
            return

        self._is_running = False
        self._wakeup.set()
        if self._dispatcher:
            await self._dispatcher
            self._dispatcher = None
        if self._monitor:
            self._monitor.cancel()
            try:
                await self._monitor
            except asyncio.CancelledError:
                pass
            self._monitor = None
        await self.load_balancer.stop_health_checks()
        self.logger.info("Orchestrator stopped", in_flight=len(self._running))

    async def wait_idle(self) -> None:
        """Wait until no execution is in flight."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every submitted task has reached a terminal state."""
        waits = [event.wait() for event in self._done.values() if not event.is_set()]
        if waits:
            await asyncio.wait_for(asyncio.gather(*waits), timeout=timeout)

    async def shutdown(self) -> None:
        """Stop dispatching and wait for in-flight executions to finish."""
        self.logger.info("Shutting down orchestrator")
        await self.stop()
        await self.wait_idle()
        self.logger.info("Orchestrator shutdown complete", status=self.status().model_dump())

    # Submission and queries

    def submit(self, spec: Union[TaskSpec, Mapping[str, Any], None] = None, **fields: Any) -> str:
        """
        Submit a task and return its id immediately.

        Accepts a TaskSpec, a mapping of TaskSpec fields, or the fields as
        keyword arguments.

        Raises:
            TaskValidationError: The task is malformed
        """
        spec = self._coerce_spec(spec, fields)

        capabilities = resolve_capabilities(spec.type, spec.required_capabilities)
        if not capabilities and not self.config.allow_empty_capabilities:
            raise TaskValidationError(
                "task must require at least one capability", task_type=spec.type
            )

        unknown = sorted(dep for dep in spec.dependencies if dep not in self._tasks)
        if unknown:
            raise TaskValidationError(
                f"unknown dependencies: {', '.join(unknown)}", dependencies=unknown
            )

        task = Task(
            id=f"task_{uuid.uuid4().hex}",
            type=spec.type,
            priority=spec.priority,
            required_capabilities=capabilities,
            payload=spec.payload,
            dependencies=spec.dependencies,
            timeout_seconds=spec.timeout_seconds or self.config.task_timeout_seconds,
            max_retries=spec.max_retries if spec.max_retries is not None else self.config.max_retries,
            submitted_seq=next(self._sequence),
        )

        self._tasks[task.id] = task
        self._done[task.id] = asyncio.Event()
        self._pending.append(task.id)
        for dependency in task.dependencies:
            self._dependents[dependency].append(task.id)

        self.logger.info(
            "Task submitted",
            task_id=task.id,
            task_type=task.type,
            priority=task.priority.value,
            dependencies=sorted(task.dependencies),
        )

        self._classify(task)
        self._wakeup.set()
        return task.id

    def _coerce_spec(self, spec: Union[TaskSpec, Mapping[str, Any], None], fields: Dict[str, Any]) -> TaskSpec:
        try:
            if spec is None:
                return TaskSpec(**fields)
            if isinstance(spec, TaskSpec):
                if not fields:
                    return spec
                spec = spec.model_dump()
            return TaskSpec.model_validate({**spec, **fields})
        except ValidationError as e:
            raise TaskValidationError(
                f"invalid task: {e.error_count()} validation error(s)",
                errors=e.errors(include_url=False),
            ) from e

    def get_result(self, task_id: str) -> Union[TaskResult, ResultState]:
        """
        Return the result of a terminal task, or PENDING while it is in flight.

        Raises:
            UnknownTaskError: The id was never issued by this orchestrator
        """
        if task_id not in self._tasks:
            raise UnknownTaskError(task_id)
        return self._results.get(task_id, PENDING)

    async def wait_for_result(self, task_id: str, timeout: Optional[float] = None) -> TaskResult:
        """Wait for a task to reach a terminal state and return its result."""
        if task_id not in self._tasks:
            raise UnknownTaskError(task_id)
        await asyncio.wait_for(self._done[task_id].wait(), timeout=timeout)
        return self._results[task_id]

    def get_task(self, task_id: str) -> Task:
        """Return a copy of a task record."""
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task.model_copy()

    def list_tasks(self, state: Optional[TaskState] = None) -> List[Task]:
        return [
            task.model_copy() for task in self._tasks.values()
            if state is None or task.state == state
        ]

    def status(self) -> OrchestratorStatus:
        succeeded = sum(1 for result in self._results.values() if result.success)
        return OrchestratorStatus(
            queued=len(self._pending),
            running=len(self._running),
            completed=len(self._results),
            succeeded=succeeded,
            failed=len(self._results) - succeeded,
            is_running=self._is_running,
            balancer=self.load_balancer.get_stats(),
        )

    def add_listener(self, callback: TransitionListener) -> None:
        """Register ``callback(task, old_state, new_state)`` for every transition."""
        self.events.add_listener(callback)

    # Scheduling

    async def _dispatch_loop(self) -> None:
        while self._is_running:
            self._wakeup.clear()
            await self._scan()
            await self._wakeup.wait()

    async def _scan(self) -> None:
        for task_id in self._dispatch_order():
            if not self._is_running or self._slots.locked():
                break

            task = self._tasks[task_id]
            if task.state != TaskState.READY:
                continue
            if task_id in self._backing_off:
                continue

            # Does not suspend: the semaphore was checked above
            await self._slots.acquire()
            self._dispatch(task)

    def _dispatch_order(self) -> List[str]:
        if self.config.scheduling_policy == SchedulingPolicy.PRIORITY:
            return sorted(
                self._pending,
                key=lambda tid: (self._tasks[tid].priority.rank, self._tasks[tid].submitted_seq)
            )
        return list(self._pending)

    def _dispatch(self, task: Task) -> None:
        self._pending.remove(task.id)
        self._backing_off.discard(task.id)
        task.attempts += 1
        self._transition(task, TaskState.RUNNING)
        self._running[task.id] = asyncio.create_task(
            self._run_attempt(task), name=f"{task.id}#{task.attempts}"
        )
        self.logger.debug("Task dispatched", task_id=task.id, attempt=task.attempts)

    async def _run_attempt(self, task: Task) -> None:
        bind_task_context(task_id=task.id, attempt=task.attempts)
        request = ExecutionRequest(
            capabilities=task.required_capabilities,
            priority=task.priority,
            payload=task.payload,
            timeout_seconds=task.timeout_seconds,
            task_id=task.id,
        )
        snapshot = task.model_copy()

        async def execute_on(agent: AgentDescriptor) -> Any:
            return await invoke_callback(self._executor, snapshot, agent)

        start_time = time.monotonic()
        try:
            outcome = await self.load_balancer.execute_task(request, execute_on)
        except asyncio.CancelledError:
            self._release(task)
            self._complete_attempt(task, None, ExecutionError("execution cancelled"), start_time)
            raise
        except Exception as e:
            self._release(task)
            self._complete_attempt(task, None, e, start_time)
        else:
            self._release(task)
            self._complete_attempt(task, outcome, None, start_time)

    def _release(self, task: Task) -> None:
        self._running.pop(task.id, None)
        self._slots.release()

    def _retry_due(self, task_id: str) -> None:
        self._backing_off.discard(task_id)
        self._wakeup.set()

    def _complete_attempt(
        self,
        task: Task,
        outcome: Optional[ExecutionOutcome],
        error: Optional[BaseException],
        start_time: float
    ) -> None:
        elapsed_ms = (time.monotonic() - start_time) * 1000

        if error is None:
            self._finalize(task, TaskState.SUCCEEDED, TaskResult(
                task_id=task.id,
                success=True,
                data=outcome.data,
                execution_time_ms=outcome.execution_time_ms,
                agent_id=outcome.agent_id,
                attempts=task.attempts,
            ))
            self.logger.info(
                "Task succeeded",
                task_id=task.id,
                agent_id=outcome.agent_id,
                attempts=task.attempts,
                execution_time_ms=round(outcome.execution_time_ms, 2),
            )

        elif task.retries_used < task.max_retries:
            task.retries_used += 1
            self._transition(task, TaskState.READY)
            bisect.insort(self._pending, task.id, key=lambda tid: self._tasks[tid].submitted_seq)

            delay = self.config.retry_delay_seconds
            if delay > 0:
                self._backing_off.add(task.id)
                asyncio.get_running_loop().call_later(delay, self._retry_due, task.id)

            self.logger.warning(
                "Task attempt failed, retrying",
                task_id=task.id,
                attempt=task.attempts,
                retries_used=task.retries_used,
                max_retries=task.max_retries,
                error=str(error),
                error_type=_error_type_of(error),
            )

        else:
            self._finalize(task, TaskState.FAILED, TaskResult(
                task_id=task.id,
                success=False,
                error=str(error),
                error_type=_error_type_of(error),
                execution_time_ms=elapsed_ms,
                agent_id=_agent_id_of(error),
                attempts=task.attempts,
            ))
            self.logger.error(
                "Task failed",
                task_id=task.id,
                attempts=task.attempts,
                error=str(error),
                error_type=_error_type_of(error),
            )

        self._wakeup.set()

    # Dependency bookkeeping

    def _classify(self, task: Task) -> None:
        """Move a waiting task to blocked, ready or failed based on its dependencies."""
        failed_dependency = None
        satisfied = True
        for dependency_id in sorted(task.dependencies):
            state = self._tasks[dependency_id].state
            if state == TaskState.FAILED:
                failed_dependency = dependency_id
                break
            if state != TaskState.SUCCEEDED:
                satisfied = False

        if failed_dependency is not None:
            self._fail_on_dependency(task, failed_dependency)
            self._cascade_failure(task.id)
        elif satisfied:
            if task.state != TaskState.READY:
                self._transition(task, TaskState.READY)
        elif task.state != TaskState.BLOCKED:
            self._transition(task, TaskState.BLOCKED)

    def _finalize(self, task: Task, state: TaskState, result: TaskResult) -> None:
        self._settle(task, state, result)
        if state == TaskState.SUCCEEDED:
            for dependent_id in self._dependents.get(task.id, ()):
                dependent = self._tasks[dependent_id]
                if not dependent.is_terminal:
                    self._classify(dependent)
        else:
            self._cascade_failure(task.id)

    def _settle(self, task: Task, state: TaskState, result: TaskResult) -> None:
        # Result is recorded before listeners hear about the terminal state
        old_state = self._set_state(task, state)
        self._results[task.id] = result
        if task.id in self._pending:
            self._pending.remove(task.id)
        self._backing_off.discard(task.id)
        self._done[task.id].set()
        self.events.notify(task, old_state, state)

    def _fail_on_dependency(self, task: Task, dependency_id: str) -> None:
        error = DependencyFailedError(dependency_id, task_id=task.id)
        self._settle(task, TaskState.FAILED, TaskResult(
            task_id=task.id,
            success=False,
            error=str(error),
            error_type=type(error).__name__,
            attempts=task.attempts,
        ))
        self.logger.warning("Task failed on dependency", task_id=task.id, dependency_id=dependency_id)

    def _cascade_failure(self, root_id: str) -> None:
        stack = [root_id]
        while stack:
            failed_id = stack.pop()
            for dependent_id in self._dependents.get(failed_id, ()):
                dependent = self._tasks[dependent_id]
                if dependent.is_terminal:
                    continue
                self._fail_on_dependency(dependent, failed_id)
                stack.append(dependent_id)

    def _transition(self, task: Task, new_state: TaskState) -> None:
        old_state = self._set_state(task, new_state)
        self.events.notify(task, old_state, new_state)

    def _set_state(self, task: Task, new_state: TaskState) -> TaskState:
        old_state = task.state
        if new_state not in TASK_TRANSITIONS[old_state]:
            raise InvalidTransitionError(task.id, old_state.value, new_state.value)
        task.state = new_state
        return old_state

    # Monitoring

    async def _monitor_loop(self) -> None:
        while self._is_running:
            await asyncio.sleep(self.config.monitoring_interval_seconds)
            self.log_status()

    def log_status(self) -> None:
        """Log a status snapshot."""
        status = self.status()
        self.logger.info(
            "Orchestrator status",
            queued=status.queued,
            running=status.running,
            completed=status.completed,
            succeeded=status.succeeded,
            failed=status.failed,
            balancer=status.balancer.model_dump(),
            agents=self.load_balancer.registry.get_registry_status()["agents"],
        )
