"""
Unit tests for agent selection strategies.
"""

from collections import Counter

import pytest

from agent_conductor.models.core import AgentDescriptor, AgentPerformance
from agent_conductor.orchestration.strategies import (
    LeastConnectionsStrategy, ResponseTimeStrategy, RoundRobinStrategy,
    WeightedStrategy, create_strategy
)
from agent_conductor.utils.config import BalancingStrategyName


def agent(agent_id: str, **fields) -> AgentDescriptor:
    return AgentDescriptor(id=agent_id, name=agent_id.upper(), **fields)


class TestRoundRobin:
    """Test round-robin cycling."""

    def test_cycles_in_order(self):
        strategy = RoundRobinStrategy()
        pool = [agent("a"), agent("b"), agent("c")]
        picks = [strategy.choose(pool).id for _ in range(6)]
        assert picks == ["a", "b", "c", "a", "b", "c"]

    def test_ignores_load(self):
        strategy = RoundRobinStrategy()
        pool = [agent("a", resource_load=10), agent("b")]
        assert strategy.choose(pool).id == "a"

    def test_each_candidate_set_cycles_independently(self):
        strategy = RoundRobinStrategy()
        pair = [agent("a"), agent("b")]
        trio = [agent("a"), agent("b"), agent("c")]
        pair_picks, trio_picks = [], []
        for _ in range(3):
            pair_picks.append(strategy.choose(pair).id)
            trio_picks.append(strategy.choose(trio).id)
        assert pair_picks == ["a", "b", "a"]
        assert trio_picks == ["a", "b", "c"]


class TestLeastConnections:
    """Test least-connections selection."""

    def test_picks_least_loaded(self):
        pool = [agent("a", resource_load=2), agent("b", resource_load=0), agent("c", resource_load=1)]
        assert LeastConnectionsStrategy().choose(pool).id == "b"

    def test_tie_breaks_on_lowest_id(self):
        pool = [agent("c"), agent("b"), agent("a", resource_load=1)]
        assert LeastConnectionsStrategy().choose(pool).id == "b"


class TestResponseTime:
    """Test response-time selection."""

    def test_picks_fastest(self):
        pool = [
            agent("a", performance=AgentPerformance(average_response_time_ms=50.0)),
            agent("b", performance=AgentPerformance(average_response_time_ms=10.0)),
        ]
        assert ResponseTimeStrategy().choose(pool).id == "b"

    def test_equal_speed_falls_back_to_load(self):
        pool = [agent("a", resource_load=3), agent("b", resource_load=1)]
        assert ResponseTimeStrategy().choose(pool).id == "b"


class TestWeighted:
    """Test smooth weighted round-robin."""

    def test_proportional_to_weight(self):
        strategy = WeightedStrategy()
        pool = [agent("a", weight=3.0), agent("b", weight=1.0)]
        picks = Counter(strategy.choose(pool).id for _ in range(8))
        assert picks == {"a": 6, "b": 2}

    def test_does_not_cluster(self):
        strategy = WeightedStrategy()
        pool = [agent("a", weight=2.0), agent("b", weight=1.0)]
        picks = [strategy.choose(pool).id for _ in range(3)]
        assert picks == ["a", "b", "a"]

    def test_error_rate_reduces_share(self):
        strategy = WeightedStrategy()
        flaky = agent("a", performance=AgentPerformance(error_rate=0.75, success_rate=0.25))
        pool = [flaky, agent("b")]
        picks = Counter(strategy.choose(pool).id for _ in range(10))
        assert picks["b"] > picks["a"]

    def test_fully_failing_agent_keeps_floor(self):
        strategy = WeightedStrategy(min_health_factor=0.1)
        failing = agent("a", performance=AgentPerformance(error_rate=1.0, success_rate=0.0))
        assert strategy.effective_weight(failing) == pytest.approx(0.1)


class TestCreateStrategy:
    """Test strategy factory."""

    @pytest.mark.parametrize("name,cls", [
        ("round-robin", RoundRobinStrategy),
        ("weighted", WeightedStrategy),
        ("least-connections", LeastConnectionsStrategy),
        (BalancingStrategyName.RESPONSE_TIME, ResponseTimeStrategy),
    ])
    def test_by_name(self, name, cls):
        assert isinstance(create_strategy(name), cls)

    def test_instance_passes_through(self):
        strategy = RoundRobinStrategy()
        assert create_strategy(strategy) is strategy

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown balancing strategy"):
            create_strategy("random")
