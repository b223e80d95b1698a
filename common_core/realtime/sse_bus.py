from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

log = logging.getLogger("fleettrack.sse_bus")


@dataclass(frozen=True)
class SseEvent:
    id: str
    data_json: str


class SseBus:
    """In-process publish/subscribe buffer behind the change feed.

    Publishers never wait on subscribers and nothing in the allocation engine
    reads from the bus, so a process with no listeners behaves identically.
    Event ids are a per-process monotonic counter. A subscriber resuming with
    an id that has fallen out of the buffer gets everything still buffered,
    starting at the oldest retained event.
    """

    def __init__(self, maxlen: int = 5000):
        self._events: list[SseEvent] = []
        self._maxlen = maxlen
        self._seq = itertools.count(1)
        self._cond: Optional[asyncio.Condition] = None

    def publish(self, data: dict) -> SseEvent:
        ev = SseEvent(id=str(next(self._seq)), data_json=json.dumps(data, ensure_ascii=False, default=str))
        self._events.append(ev)
        if len(self._events) > self._maxlen:
            self._events = self._events[-self._maxlen :]
        self._wake()
        return ev

    def _wake(self) -> None:
        if self._cond is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # publisher is a sync handler running in the threadpool
            return

        async def _notify() -> None:
            async with self._cond:
                self._cond.notify_all()

        loop.create_task(_notify())

    def events_after(self, last_event_id: Optional[str]) -> list[SseEvent]:
        if not last_event_id:
            return []
        try:
            last = int(last_event_id)
        except ValueError:
            return []
        return [ev for ev in self._events if int(ev.id) > last]

    async def subscribe(
        self, last_event_id: Optional[str], poll_interval_s: float = 1.0
    ) -> AsyncIterator[SseEvent]:
        if self._cond is None:
            self._cond = asyncio.Condition()

        backlog = self.events_after(last_event_id)
        for ev in backlog:
            yield ev
        if backlog:
            last_event_id = backlog[-1].id
        elif self._events and not last_event_id:
            last_event_id = self._events[-1].id
        elif not last_event_id:
            last_event_id = "0"

        while True:
            async with self._cond:
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=poll_interval_s)
                except asyncio.TimeoutError:
                    # threadpool publishers cannot notify; fall back to polling the buffer
                    pass
            for ev in self.events_after(last_event_id):
                yield ev
                last_event_id = ev.id
