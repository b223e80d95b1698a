from __future__ import annotations

import logging
import time

from apps.fleet_worker.retry_agent import process_retry_queue_once
from apps.fleet_worker.sync_agent import run_sync_all_once
from common_core.config import settings
from common_core.guardrails import validate_runtime_settings
from common_core.logging_setup import configure_logging

log = logging.getLogger("fleettrack.worker")


def main() -> None:
    configure_logging(component="fleet_worker")
    validate_runtime_settings()
    log.info("worker_started", extra={"component": "fleet_worker"})

    retry_fail_streak = 0
    sync_fail_streak = 0
    last_sync = 0.0

    while True:
        try:
            counts = process_retry_queue_once()
            retry_fail_streak = 0
            if any(counts.values()):
                log.info("retry_batch_done", extra={"component": "fleet_worker", "count": counts["completed"]})
        except Exception as e:
            retry_fail_streak += 1
            log.error("retry_batch_failed", extra={"err": str(e), "streak": retry_fail_streak})

        if time.time() - last_sync >= settings.sync_interval_sec:
            try:
                res = run_sync_all_once()
                sync_fail_streak = 0
                last_sync = time.time()
                log.info("sync_all_run", extra={"component": "fleet_worker", "count": res["changed"]})
            except Exception as e:
                sync_fail_streak += 1
                log.error("sync_all_failed", extra={"err": str(e), "streak": sync_fail_streak})

        time.sleep(settings.worker_poll_sec)


if __name__ == "__main__":
    main()
