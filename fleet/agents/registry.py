"""Agent-type to worker factory mapping."""
from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Union

from fleet.agents.base import WorkerAgent
from fleet.agents.cost_agent import CostObservabilityAgent
from fleet.agents.echo import EchoAgent
from fleet.agents.llm_agent import SYSTEM_PROMPTS, ClientFactory, LLMAgent
from fleet.core.context import FleetContext
from fleet.core.models import Worker
from fleet.services.budget import BudgetLedger

AgentFactory = Callable[[Worker, FleetContext, BudgetLedger], WorkerAgent]


@dataclass(frozen=True, slots=True)
class Unimplemented:
    """Returned for agent types with no registered factory."""

    agent_type: str

    @property
    def reason(self) -> str:
        return f"No implementation registered for agent type '{self.agent_type}'"


class AgentRegistry:
    def __init__(self, factories: Optional[Dict[str, AgentFactory]] = None) -> None:
        self._factories: Dict[str, AgentFactory] = dict(factories or {})

    def register(self, agent_type: str, factory: AgentFactory) -> None:
        self._factories[agent_type] = factory

    def resolve(self, agent_type: str) -> Union[AgentFactory, Unimplemented]:
        factory = self._factories.get(agent_type)
        if factory is None:
            return Unimplemented(agent_type)
        return factory

    def __contains__(self, agent_type: object) -> bool:
        return agent_type in self._factories

    @property
    def agent_types(self) -> Iterable[str]:
        return tuple(self._factories)


def default_registry(client_factory: Optional[ClientFactory] = None) -> AgentRegistry:
    """Registry for the built-in agent types. ``governance`` has no implementation."""
    llm = functools.partial(LLMAgent, client_factory=client_factory)
    registry = AgentRegistry(
        {
            "echo": EchoAgent,
            "llm": llm,
            "cost_observability": CostObservabilityAgent,
        }
    )
    for agent_type in SYSTEM_PROMPTS:
        registry.register(agent_type, llm)
    return registry
