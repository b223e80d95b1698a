from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from apps.fleet_backend import models  # noqa: F401
from apps.fleet_backend.routers import allocations, realtime
from apps.fleet_backend.routers.events import router as events_router
from apps.fleet_backend.routers.health import router as health_router
from apps.fleet_backend.routers.state import router as state_router
from apps.fleet_backend.routers.sync import router as sync_router
from common_core.guardrails import validate_runtime_settings
from common_core.logging_setup import configure_logging
from common_core.request_id import RequestIdMiddleware

log = logging.getLogger("fleettrack.api")

app = FastAPI(title="FleetTrack Allocation Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(RequestIdMiddleware)

app.include_router(health_router)
app.include_router(events_router)
app.include_router(state_router)
app.include_router(sync_router)
app.include_router(allocations.router)
app.include_router(realtime.router)


@app.on_event("startup")
def _startup() -> None:
    configure_logging(component="fleet_backend")
    validate_runtime_settings()
    log.info("startup_complete", extra={"component": "fleet_backend"})
