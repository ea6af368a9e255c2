from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .stats import RuntimeStats

log = logging.getLogger("warden.event_bus")

Handler = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class DispatchPolicy:
    max_batch: int = 4
    every_ms: int = 250
    max_queue_size: int = 1_000


class EventBus:
    """Fan-out of enforcement events to subscribers.

    Before ``start`` events are delivered inline; once started they are
    queued and drained in small paced batches so a burst of closures does
    not turn into a burst of webhook calls. A failing handler never affects
    the publisher or the other handlers.
    """

    def __init__(self, policy: Optional[DispatchPolicy] = None, stats: Optional[RuntimeStats] = None) -> None:
        self._policy = policy or DispatchPolicy()
        self._stats = stats
        self._handlers: dict[str, list[Handler]] = {}
        self._q: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(maxsize=self._policy.max_queue_size)
        self._stop = asyncio.Event()
        self._runner: Optional[asyncio.Task[None]] = None

    def subscribe(self, event_name: str, handler: Handler) -> None:
        self._handlers.setdefault(event_name, []).append(handler)

    def start(self) -> None:
        if self._runner and not self._runner.done():
            return
        self._stop.clear()
        self._runner = asyncio.create_task(self._run(), name="warden-event-bus")
        log.info("EventBus started (max_batch=%s every_ms=%s)", self._policy.max_batch, self._policy.every_ms)

    async def stop(self) -> None:
        self._stop.set()
        if self._runner:
            await self._runner
            self._runner = None
        # Flush whatever was queued after the last tick.
        while not self._q.empty():
            event_name, payload = self._q.get_nowait()
            await self._dispatch(event_name, payload)
        log.info("EventBus stopped")

    def pending(self) -> int:
        return self._q.qsize()

    async def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        if self._runner is None or self._runner.done():
            await self._dispatch(event_name, payload)
            return
        try:
            self._q.put_nowait((event_name, payload))
        except asyncio.QueueFull:
            log.warning("EventBus queue full; dropping %s event", event_name)

    async def _dispatch(self, event_name: str, payload: dict[str, Any]) -> None:
        for handler in self._handlers.get(event_name, []):
            try:
                await handler(event_name, payload)
                if self._stats is not None:
                    self._stats.notifications_delivered += 1
            except Exception:
                if self._stats is not None:
                    self._stats.notifications_failed += 1
                log.exception("Handler for %s failed", event_name)

    async def _run(self) -> None:
        tick_sleep = max(1, self._policy.every_ms) / 1000.0
        max_batch = max(1, self._policy.max_batch)

        while not self._stop.is_set():
            for _ in range(max_batch):
                try:
                    event_name, payload = self._q.get_nowait()
                except asyncio.QueueEmpty:
                    break
                await self._dispatch(event_name, payload)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=tick_sleep)
            except asyncio.TimeoutError:
                pass
