"""Agent adapters and ``auto`` dispatch."""

from agent_conductor.agents.availability import AvailabilityCache
from agent_conductor.agents.base import AgentAdapter, AgentResponse, AgentRunError, AgentRunOptions
from agent_conductor.agents.cascade import (
    AUTO_AGENT,
    AgentNotFoundError,
    AgentRegistry,
    CapabilityCascade,
)
from agent_conductor.agents.cli_agent import CliAgent, build_cli_agents

__all__ = [
    "AUTO_AGENT",
    "AgentAdapter",
    "AgentNotFoundError",
    "AgentRegistry",
    "AgentResponse",
    "AgentRunError",
    "AgentRunOptions",
    "AvailabilityCache",
    "CapabilityCascade",
    "CliAgent",
    "build_cli_agents",
]
