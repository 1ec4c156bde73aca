"""Time-bounded cache of agent availability probes."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_AVAILABILITY_TTL_SECONDS = 30.0


@dataclass(slots=True)
class _Entry:
    available: bool
    expires_at: float


class AvailabilityCache:
    """Remembers ``is_available()`` answers per agent name for a fixed TTL.

    One instance is shared by whoever resolves agents; tests create their own
    and call ``clear()`` instead of relying on module state.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_AVAILABILITY_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def get(self, name: str) -> bool | None:
        """Return the cached answer, or ``None`` when missing or expired."""

        entry = self._entries.get(name)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[name]
            return None
        return entry.available

    def set(self, name: str, available: bool) -> None:
        self._entries[name] = _Entry(
            available=available,
            expires_at=self._clock() + self.ttl_seconds,
        )

    def expiry(self, name: str) -> float | None:
        """Clock value at which the entry for ``name`` expires."""

        entry = self._entries.get(name)
        return entry.expires_at if entry is not None else None

    def clear(self) -> None:
        self._entries.clear()
