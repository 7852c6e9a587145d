"""
Agent selection strategies.

Every strategy receives a non-empty list of eligible agents in registration
order and returns one of them. Whenever agents rank equally the lowest agent
id wins, so selection is reproducible.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Tuple, Union

from ..models.core import AgentDescriptor
from ..utils.config import BalancingStrategyName


class SelectionStrategy(ABC):
    """Base class for pluggable selection strategies."""

    name: str = "abstract"

    @abstractmethod
    def choose(self, candidates: List[AgentDescriptor]) -> AgentDescriptor:
        """Pick one agent out of ``candidates``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class RoundRobinStrategy(SelectionStrategy):
    """
    Cycles through the eligible agents, ignoring load.

    Each distinct set of eligible agents keeps its own cursor, so requests
    with different capability needs do not disturb each other's rotation.
    """

    name = BalancingStrategyName.ROUND_ROBIN.value

    def __init__(self):
        self._cursors: Dict[Tuple[str, ...], int] = {}

    def choose(self, candidates: List[AgentDescriptor]) -> AgentDescriptor:
        key = tuple(agent.id for agent in candidates)
        position = self._cursors.get(key, 0)
        self._cursors[key] = (position + 1) % len(candidates)
        return candidates[position]


class WeightedStrategy(SelectionStrategy):
    """
    Smooth weighted round-robin.

    Each agent's effective weight is its static weight scaled down by its
    recent error rate. Over any run of selections an agent is picked in
    proportion to its effective weight, without the clustering a plain
    weighted random draw produces.
    """

    name = BalancingStrategyName.WEIGHTED.value

    def __init__(self, min_health_factor: float = 0.05):
        self.min_health_factor = min_health_factor
        self._current: Dict[str, float] = {}

    def effective_weight(self, agent: AgentDescriptor) -> float:
        return agent.weight * max(1.0 - agent.performance.error_rate, self.min_health_factor)

    def choose(self, candidates: List[AgentDescriptor]) -> AgentDescriptor:
        total = 0.0
        for agent in candidates:
            weight = self.effective_weight(agent)
            self._current[agent.id] = self._current.get(agent.id, 0.0) + weight
            total += weight

        selected = min(candidates, key=lambda a: (-self._current[a.id], a.id))
        self._current[selected.id] -= total
        return selected


class LeastConnectionsStrategy(SelectionStrategy):
    """Picks the agent with the fewest outstanding executions."""

    name = BalancingStrategyName.LEAST_CONNECTIONS.value

    def choose(self, candidates: List[AgentDescriptor]) -> AgentDescriptor:
        return min(candidates, key=lambda a: (a.resource_load, a.id))


class ResponseTimeStrategy(SelectionStrategy):
    """Picks the fastest agent by rolling average, then the least loaded."""

    name = BalancingStrategyName.RESPONSE_TIME.value

    def choose(self, candidates: List[AgentDescriptor]) -> AgentDescriptor:
        return min(
            candidates,
            key=lambda a: (a.performance.average_response_time_ms, a.resource_load, a.id)
        )


STRATEGIES = {
    BalancingStrategyName.ROUND_ROBIN: RoundRobinStrategy,
    BalancingStrategyName.WEIGHTED: WeightedStrategy,
    BalancingStrategyName.LEAST_CONNECTIONS: LeastConnectionsStrategy,
    BalancingStrategyName.RESPONSE_TIME: ResponseTimeStrategy,
}


def create_strategy(strategy: Union[str, BalancingStrategyName, SelectionStrategy]) -> SelectionStrategy:
    """
    Build a strategy from its name, or pass an instance through.

    Raises:
        ValueError: If the name is not a known strategy
    """
    if isinstance(strategy, SelectionStrategy):
        return strategy

    try:
        key = BalancingStrategyName(strategy)
    except ValueError:
        known = ", ".join(s.value for s in BalancingStrategyName)
        raise ValueError(f"Unknown balancing strategy {strategy!r}; expected one of: {known}") from None
    return STRATEGIES[key]()
