from __future__ import annotations

import logging
from typing import Any

from common_core.config import settings
from common_core.realtime.sse_bus import SseBus

log = logging.getLogger("fleettrack.runtime")

sse_bus = SseBus(maxlen=settings.feed_buffer_size)


def publish_change(change_type: str, payload: dict[str, Any]) -> None:
    try:
        sse_bus.publish({"type": change_type, **payload})
    except Exception as e:
        log.warning("change_publish_failed", extra={"event_type": change_type, "err": str(e)})
