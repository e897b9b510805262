"""Bounded, coalescing work queue of resource keys with per-key backoff.

Delivery is at-least-once and unordered across keys. A key is never
handed to two workers at the same time: adding a key that is being
processed marks it dirty, and it is handed out again once ``done`` is
called for it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Hashable

logger = logging.getLogger(__name__)


class WorkQueue:
    """asyncio work queue; all methods must be called on the event loop."""

    def __init__(
        self,
        name: str,
        *,
        max_keys: int,
        backoff_base_seconds: float,
        backoff_max_seconds: float,
    ) -> None:
        self._name = name
        self._max_keys = max_keys
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds

        self._ready: asyncio.Queue[Hashable | None] = asyncio.Queue()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._timers: dict[Hashable, tuple[float, asyncio.TimerHandle]] = {}
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    @property
    def name(self) -> str:
        return self._name

    def __len__(self) -> int:
        """Keys waiting to be handed out."""
        return len(self._dirty)

    def add(self, key: Hashable) -> bool:
        """Queue ``key`` unless it is already waiting.

        Returns:
            False if the key was dropped because the queue is full or
            shutting down.
        """
        if self._shutting_down:
            return False
        if key in self._dirty:
            return True
        if len(self._dirty) >= self._max_keys:
            logger.warning(
                f"Work queue {self._name} full, dropping {key}",
                extra={"queue": self._name, "max_keys": self._max_keys},
            )
            return False

        self._dirty.add(key)
        if key not in self._processing:
            self._ready.put_nowait(key)
        return True

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue ``key`` after ``delay`` seconds; the earliest pending timer wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing[0] <= due:
                return
            existing[1].cancel()
        self._timers[key] = (due, loop.call_later(delay, self._fire, key))

    def add_rate_limited(self, key: Hashable) -> float:
        """Queue ``key`` after its next backoff delay and return the delay."""
        delay = self.next_backoff(key)
        self.add_after(key, delay)
        return delay

    def next_backoff(self, key: Hashable) -> float:
        """Exponential per-key delay ``min(base * 2**n, max)``."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self._backoff_base * (2**failures), self._backoff_max)

    def forget(self, key: Hashable) -> None:
        """Reset the backoff of ``key``."""
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Hashable | None:
        """Wait for the next key; None once the queue is shut down."""
        key = await self._ready.get()
        if key is None:
            # Wake the next waiting worker too
            self._ready.put_nowait(None)
            return None
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: Hashable) -> None:
        """Mark ``key`` as processed; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._ready.put_nowait(key)

    def shutdown(self) -> None:
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._ready.put_nowait(None)

    def _fire(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        self.add(key)
