"""
Unit tests for the load balancer.
"""

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from agent_conductor.models.core import AgentHealth, ExecutionRequest, TaskPriority
from agent_conductor.models.errors import (
    AgentUnavailableError, ExecutionError, ExecutionTimeoutError, NoAgentAvailableError
)
from agent_conductor.orchestration.load_balancer import LoadBalancer
from agent_conductor.orchestration.strategies import RoundRobinStrategy
from agent_conductor.utils.config import HealthCheckConfig, LoadBalancerConfig


CAPABILITIES = ["text-generation", "data-analysis", "web-search", "pattern-recognition"]


class TestSelection:
    """Test capability and health filtering."""

    def test_capability_filter(self, load_balancer):
        agent = load_balancer.select_agent({"web-search"})
        assert agent.id == "agent-a"

    def test_no_match_returns_none(self, load_balancer):
        assert load_balancer.select_agent({"image-synthesis"}) is None

    def test_empty_requirement_matches_everyone(self, load_balancer):
        assert load_balancer.select_agent(()) is not None

    def test_exclude(self, load_balancer):
        agent = load_balancer.select_agent({"data-analysis"}, exclude={"agent-a"})
        assert agent.id == "agent-b"

    def test_unhealthy_agent_skipped(self, load_balancer):
        load_balancer.registry.set_health("agent-a", AgentHealth.UNHEALTHY)
        assert load_balancer.select_agent({"web-search"}) is None
        assert load_balancer.select_agent({"text-generation"}).id == "agent-b"

    def test_high_priority_prefers_healthy(self, load_balancer):
        load_balancer.registry.set_health("agent-a", AgentHealth.DEGRADED)
        assert load_balancer.select_agent({"text-generation"}, TaskPriority.MEDIUM).id == "agent-a"
        assert load_balancer.select_agent({"text-generation"}, TaskPriority.HIGH).id == "agent-b"
        assert load_balancer.select_agent({"text-generation"}, TaskPriority.CRITICAL).id == "agent-b"

    def test_high_priority_falls_back_to_degraded(self, load_balancer):
        load_balancer.registry.set_health("agent-a", AgentHealth.DEGRADED)
        assert load_balancer.select_agent({"web-search"}, TaskPriority.CRITICAL).id == "agent-a"

    def test_round_robin_over_eligible(self, agent_specs, balancer_config):
        balancer = LoadBalancer(strategy=RoundRobinStrategy(), config=balancer_config)
        balancer.register_agents(agent_specs)
        picks = [balancer.select_agent({"text-generation"}).id for _ in range(4)]
        assert picks == ["agent-a", "agent-b", "agent-a", "agent-b"]

    def test_register_is_idempotent(self, load_balancer, agent_specs):
        load_balancer.register_agent(agent_specs[0])
        assert len(load_balancer.registry) == 3


@given(
    agent_caps=st.lists(
        st.frozensets(st.sampled_from(CAPABILITIES)), min_size=1, max_size=6
    ),
    required=st.frozensets(st.sampled_from(CAPABILITIES), max_size=3),
    unhealthy=st.sets(st.integers(min_value=0, max_value=5)),
    strategy=st.sampled_from(["round-robin", "weighted", "least-connections", "response-time"]),
)
@settings(max_examples=100, deadline=None)
def test_selection_respects_capabilities_and_health(agent_caps, required, unhealthy, strategy):
    balancer = LoadBalancer(
        strategy=strategy, config=LoadBalancerConfig(health=HealthCheckConfig(enabled=False))
    )
    for index, caps in enumerate(agent_caps):
        balancer.register_agent({"id": f"agent-{index}", "name": f"Agent {index}", "capabilities": caps})
        if index in unhealthy:
            balancer.registry.set_health(f"agent-{index}", AgentHealth.UNHEALTHY)

    eligible = {
        f"agent-{index}" for index, caps in enumerate(agent_caps)
        if required <= caps and index not in unhealthy
    }
    for _ in range(3):
        selected = balancer.select_agent(required)
        if not eligible:
            assert selected is None
        else:
            assert selected.id in eligible
            assert required <= selected.capabilities


class TestExecution:
    """Test execute_task."""

    @pytest.mark.asyncio
    async def test_success(self, load_balancer):
        async def run(agent):
            return f"done by {agent.id}"

        outcome = await load_balancer.execute_task(
            ExecutionRequest(capabilities={"web-search"}, task_id="t1"), run
        )
        assert outcome.agent_id == "agent-a"
        assert outcome.data == "done by agent-a"
        assert outcome.execution_time_ms >= 0

        agent = load_balancer.registry.get("agent-a")
        assert agent.resource_load == 0
        assert agent.performance.total_executions == 1

        stats = load_balancer.get_stats()
        assert stats.total_requests == 1
        assert stats.successful_requests == 1
        assert stats.failed_requests == 0

    @pytest.mark.asyncio
    async def test_mapping_request_and_sync_callback(self, load_balancer):
        outcome = await load_balancer.execute_task(
            {"capabilities": ["pattern-recognition"]}, lambda agent: agent.name
        )
        assert outcome.data == "Analyzer"

    @pytest.mark.asyncio
    async def test_unavailable_agent_is_replaced(self, load_balancer):
        seen = []

        async def run(agent):
            seen.append(agent.id)
            if agent.id == "agent-a":
                raise AgentUnavailableError("connection refused")
            return "ok"

        outcome = await load_balancer.execute_task(
            ExecutionRequest(capabilities={"text-generation"}), run
        )
        assert seen == ["agent-a", "agent-b"]
        assert outcome.agent_id == "agent-b"
        assert load_balancer.get_stats().successful_requests == 1

    @pytest.mark.asyncio
    async def test_unavailable_retries_are_bounded(self, load_balancer):
        seen = []

        async def run(agent):
            seen.append(agent.id)
            raise AgentUnavailableError("busy")

        with pytest.raises(AgentUnavailableError):
            await load_balancer.execute_task(ExecutionRequest(capabilities={"text-generation"}), run)
        # max_agent_retries defaults to 2
        assert len(seen) == 3
        assert seen[:2] == ["agent-a", "agent-b"]
        assert load_balancer.get_stats().failed_requests == 1

    @pytest.mark.asyncio
    async def test_execution_error_not_retried(self, load_balancer):
        calls = []

        async def run(agent):
            calls.append(agent.id)
            raise RuntimeError("model crashed")

        with pytest.raises(ExecutionError) as exc_info:
            await load_balancer.execute_task(ExecutionRequest(capabilities={"web-search"}), run)

        assert calls == ["agent-a"]
        assert str(exc_info.value) == "model crashed"
        assert exc_info.value.agent_id == "agent-a"
        assert exc_info.value.context["error_type"] == "RuntimeError"
        agent = load_balancer.registry.get("agent-a")
        assert agent.resource_load == 0
        assert agent.performance.failed_executions == 1

    @pytest.mark.asyncio
    async def test_timeout(self, load_balancer):
        async def run(agent):
            await asyncio.sleep(1.0)

        with pytest.raises(ExecutionTimeoutError) as exc_info:
            await load_balancer.execute_task(
                ExecutionRequest(capabilities={"web-search"}, timeout_seconds=0.05), run
            )
        assert exc_info.value.agent_id == "agent-a"
        assert load_balancer.registry.get("agent-a").resource_load == 0

    @pytest.mark.asyncio
    async def test_callback_timeout_error_is_not_a_deadline(self, load_balancer):
        async def run(agent):
            raise TimeoutError("upstream read timeout")

        with pytest.raises(ExecutionError) as exc_info:
            await load_balancer.execute_task(
                ExecutionRequest(capabilities={"web-search"}, timeout_seconds=30), run
            )
        assert not isinstance(exc_info.value, ExecutionTimeoutError)
        assert str(exc_info.value) == "upstream read timeout"
        assert exc_info.value.context["error_type"] == "TimeoutError"

    @pytest.mark.asyncio
    async def test_no_agent_available(self, load_balancer):
        async def run(agent):
            raise AssertionError("must not run")

        with pytest.raises(NoAgentAvailableError):
            await load_balancer.execute_task(ExecutionRequest(capabilities={"image-synthesis"}), run)
        assert load_balancer.get_stats().failed_requests == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_spread_by_load(self, load_balancer):
        release = asyncio.Event()
        started = []

        async def run(agent):
            started.append(agent.id)
            await release.wait()
            return agent.id

        requests = [
            asyncio.create_task(load_balancer.execute_task(
                ExecutionRequest(capabilities={"data-analysis"}), run
            ))
            for _ in range(3)
        ]
        while len(started) < 3:
            await asyncio.sleep(0.01)

        assert sorted(started) == ["agent-a", "agent-b", "agent-c"]
        assert all(a.resource_load == 1 for a in load_balancer.registry.list_agents())

        release.set()
        await asyncio.gather(*requests)
        assert all(a.resource_load == 0 for a in load_balancer.registry.list_agents())


class TestHealthChecks:
    """Test probe driven health."""

    @pytest.mark.asyncio
    async def test_three_failed_probes_exclude_agent(self, agent_specs, balancer_config):
        alive = {"agent-a": False}

        def probe(agent):
            return alive.get(agent.id, True)

        balancer = LoadBalancer(config=balancer_config, probe=probe)
        balancer.register_agents(agent_specs)

        for _ in range(3):
            await balancer.check_health()
        assert balancer.registry.get("agent-a").health == AgentHealth.UNHEALTHY

        for _ in range(5):
            assert balancer.select_agent({"text-generation"}).id != "agent-a"
        assert balancer.select_agent({"web-search"}) is None

        alive["agent-a"] = True
        results = await balancer.check_health()
        assert results["agent-a"] == AgentHealth.HEALTHY
        assert balancer.select_agent({"web-search"}).id == "agent-a"

    @pytest.mark.asyncio
    async def test_disabled_health_checks_do_not_start(self, load_balancer):
        await load_balancer.start_health_checks()
        assert not load_balancer.health_monitor.is_running
        await load_balancer.stop_health_checks()

    @pytest.mark.asyncio
    async def test_enabled_health_checks_run(self, agent_specs):
        balancer = LoadBalancer(config=LoadBalancerConfig(
            health=HealthCheckConfig(enabled=True, interval_seconds=60.0)
        ))
        balancer.register_agents(agent_specs)
        await balancer.start_health_checks()
        assert balancer.health_monitor.is_running
        await balancer.stop_health_checks()
        assert not balancer.health_monitor.is_running

    def test_agent_metrics(self, load_balancer):
        metrics = load_balancer.get_agent_metrics()
        assert metrics["total_agents"] == 3
        assert set(metrics["agents"]) == {"agent-a", "agent-b", "agent-c"}
