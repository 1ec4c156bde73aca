"""Agent registry and ``auto`` dispatch through a capability cascade."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from agent_conductor.agents.availability import AvailabilityCache
from agent_conductor.agents.base import AgentAdapter

logger = logging.getLogger(__name__)

AUTO_AGENT = "auto"
DEFAULT_CASCADE = ("codex", "claude", "gemini")


class AgentNotFoundError(LookupError):
    """No adapter could be resolved for a step."""


class CapabilityCascade:
    """Ordered list of candidate agents; the first available one wins."""

    def __init__(
        self,
        candidates: Iterable[AgentAdapter],
        cache: AvailabilityCache | None = None,
    ) -> None:
        self.candidates = tuple(candidates)
        self.cache = cache if cache is not None else AvailabilityCache()

    async def is_available(self, adapter: AgentAdapter) -> bool:
        cached = self.cache.get(adapter.name)
        if cached is not None:
            return cached
        try:
            available = await adapter.is_available()
        except (OSError, RuntimeError) as error:
            logger.warning("Availability probe failed for agent=%s: %s", adapter.name, error)
            available = False
        self.cache.set(adapter.name, available)
        return available

    async def select(self) -> AgentAdapter:
        for adapter in self.candidates:
            if await self.is_available(adapter):
                return adapter
        names = ", ".join(adapter.name for adapter in self.candidates) or "<empty>"
        raise AgentNotFoundError(f"No agent available in cascade: {names}")


class AgentRegistry:
    """Name → adapter lookup; ``auto`` is delegated to the cascade."""

    def __init__(
        self,
        adapters: Mapping[str, AgentAdapter],
        *,
        cascade_order: Iterable[str] = DEFAULT_CASCADE,
        cache: AvailabilityCache | None = None,
    ) -> None:
        self._adapters = {name.strip().lower(): adapter for name, adapter in adapters.items()}
        order = [name.strip().lower() for name in cascade_order]
        unknown = [name for name in order if name not in self._adapters]
        if unknown:
            raise ValueError(f"Cascade references unknown agents: {', '.join(unknown)}")
        self.cascade = CapabilityCascade(
            (self._adapters[name] for name in order),
            cache=cache,
        )

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._adapters)

    def get(self, name: str) -> AgentAdapter | None:
        return self._adapters.get(name.strip().lower())

    async def resolve(self, name: str) -> AgentAdapter:
        normalized = name.strip().lower()
        if normalized == AUTO_AGENT:
            return await self.cascade.select()
        adapter = self._adapters.get(normalized)
        if adapter is None:
            raise AgentNotFoundError(f"Agent not found: {name!r}")
        return adapter

    async def availability(self) -> dict[str, bool]:
        """Probe every registered agent (through the cache)."""

        return {
            name: await self.cascade.is_available(adapter)
            for name, adapter in self._adapters.items()
        }
