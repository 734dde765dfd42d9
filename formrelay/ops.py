"""FastAPI ops endpoints: liveness, readiness and the manual "check now" trigger."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import HealthStatus, RelayStatus

if TYPE_CHECKING:
    from .service import RelayService

logger = structlog.get_logger()


def create_ops_app(service: RelayService) -> FastAPI:
    """Build a minimal FastAPI app with ``/health``, ``/ready`` and ``/check``.

    ``POST /check`` runs one unscheduled pass and answers once it is done;
    it waits if a scheduled pass is already running.
    """
    app = FastAPI(title=f"{service.config.name} ops", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        status = HealthStatus(
            relay_name=service.config.name,
            status=service.status,
            uptime_seconds=time.monotonic() - service.start_time,
            details=service.health_details(),
        )
        code = 200 if service.status in (RelayStatus.RUNNING, RelayStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status == RelayStatus.RUNNING
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    @app.post("/check")
    async def check() -> JSONResponse:
        if service.status != RelayStatus.RUNNING:
            return JSONResponse(content={"error": "relay not running"}, status_code=503)
        logger.info("manual_check_requested")
        summary = await service.check_now()
        message = (
            "New form responses were found and processed."
            if summary.found_new
            else "No new form responses were found."
        )
        return JSONResponse(
            content={
                "found_new": summary.found_new,
                "delivered": summary.delivered,
                "message": message,
                "summary": summary.model_dump(mode="json"),
            }
        )

    return app
