from __future__ import annotations

import allure
import pytest

from agent_conductor.agents.availability import AvailabilityCache
from agent_conductor.agents.cascade import (
    AgentNotFoundError,
    AgentRegistry,
    CapabilityCascade,
)
from fakes import FakeAgent, make_registry

pytestmark = [
    allure.epic("LLM Runtime"),
    allure.feature("Agent Dispatch"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class BrokenProbeAgent(FakeAgent):
    async def is_available(self) -> bool:
        raise OSError("binary vanished")


def test_availability_cache_expires_after_ttl() -> None:
    clock = FakeClock()
    cache = AvailabilityCache(ttl_seconds=30, clock=clock)

    cache.set("claude", True)
    clock.now = 29.9
    assert cache.get("claude") is True
    assert cache.expiry("claude") == 30.0

    clock.now = 30.0
    assert cache.get("claude") is None
    assert cache.expiry("claude") is None


def test_availability_cache_rejects_negative_ttl() -> None:
    with pytest.raises(ValueError, match="ttl_seconds"):
        AvailabilityCache(ttl_seconds=-1)


@pytest.mark.asyncio
async def test_cascade_selects_first_available_agent() -> None:
    offline = FakeAgent("codex", available=False)
    online = FakeAgent("claude")
    spare = FakeAgent("gemini")
    cascade = CapabilityCascade([offline, online, spare])

    selected = await cascade.select()

    assert selected is online
    assert spare.probes == 0


@pytest.mark.asyncio
async def test_cascade_caches_probe_results() -> None:
    agent = FakeAgent("claude")
    registry = make_registry(agent)

    await registry.resolve("auto")
    await registry.resolve("AUTO")

    assert agent.probes == 1


@pytest.mark.asyncio
async def test_failing_probe_counts_as_unavailable(caplog) -> None:
    broken = BrokenProbeAgent("codex")
    fallback = FakeAgent("claude")
    registry = make_registry(broken, fallback)

    selected = await registry.resolve("auto")

    assert selected is fallback
    assert "Availability probe failed for agent=codex" in caplog.text


@pytest.mark.asyncio
async def test_cascade_without_available_agent_raises() -> None:
    registry = make_registry(FakeAgent("codex", available=False))

    with pytest.raises(AgentNotFoundError, match="No agent available in cascade: codex"):
        await registry.resolve("auto")


@pytest.mark.asyncio
async def test_registry_resolves_names_case_insensitively() -> None:
    agent = FakeAgent("gemini")
    registry = make_registry(agent)

    assert await registry.resolve(" Gemini ") is agent
    assert registry.get("GEMINI") is agent
    assert registry.names == ("gemini",)
    with pytest.raises(AgentNotFoundError, match="Agent not found"):
        await registry.resolve("mistral")


@pytest.mark.asyncio
async def test_registry_reports_availability_of_every_agent() -> None:
    registry = make_registry(FakeAgent("codex", available=False), FakeAgent("claude"))

    assert await registry.availability() == {"codex": False, "claude": True}


def test_registry_rejects_unknown_cascade_names() -> None:
    with pytest.raises(ValueError, match="unknown agents: ollama"):
        AgentRegistry({"claude": FakeAgent("claude")}, cascade_order=("claude", "ollama"))
