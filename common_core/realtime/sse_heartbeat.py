from __future__ import annotations

import asyncio
from typing import AsyncIterator

from common_core.realtime.sse_bus import SseEvent


def format_sse(ev: SseEvent, event_name: str | None = None) -> str:
    out = f"id: {ev.id}\n"
    if event_name:
        out += f"event: {event_name}\n"
    return out + f"data: {ev.data_json}\n\n"


async def with_heartbeat(
    it: AsyncIterator[SseEvent], interval_s: float = 15.0, event_name: str | None = None
) -> AsyncIterator[str]:
    # keep the pending __anext__ alive across heartbeats instead of cancelling it
    pending: asyncio.Future | None = None
    while True:
        if pending is None:
            pending = asyncio.ensure_future(it.__anext__())
        done, _ = await asyncio.wait({pending}, timeout=interval_s)
        if not done:
            yield ": hb\n\n"
            continue
        task, pending = pending, None
        try:
            ev = task.result()
        except StopAsyncIteration:
            return
        yield format_sse(ev, event_name)
