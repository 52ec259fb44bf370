"""
Health and webhook endpoint — lightweight FastAPI app.

GET  /health   daemon status, current phase, last run summary
POST /webhook  vault item events; answers 202 whether or not the sync it
               triggers gets the lock (a dropped event is picked up by the
               next full sync)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from vaultkube.sync.events import SIGNATURE_HEADER, WebhookEvent, validate_signature

if TYPE_CHECKING:
    from vaultkube.config import Config
    from vaultkube.sync.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


def _dispatch(coordinator: SyncCoordinator, event: WebhookEvent) -> None:
    try:
        summary = coordinator.handle_event(event)
    except Exception as e:
        logger.error("Webhook-triggered sync for %s failed: %s", event.item_id, e)
        return
    if summary is None:
        logger.info("Webhook %s for %s dropped: sync already in progress", event.event_type, event.item_id)


def create_app(config: Config, coordinator: SyncCoordinator) -> FastAPI:
    """Create the health/webhook app."""
    app = FastAPI(title="vaultkube", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        last = coordinator.last_summary
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "phase": str(coordinator.phase),
            "dry_run": config.sync.dry_run,
            "interval_seconds": config.sync.interval_seconds,
            "last_run": last.to_dict() if last else None,
        }

    @app.post("/webhook", status_code=202)
    async def webhook(request: Request, background: BackgroundTasks):
        """Receive a vault event and schedule a full or selective sync."""
        body = await request.body()
        if not validate_signature(body, request.headers.get(SIGNATURE_HEADER), config.webhook.secret):
            logger.warning("Rejected webhook with invalid signature")
            return JSONResponse(status_code=401, content={"error": "invalid signature"})
        try:
            event = WebhookEvent.model_validate_json(body)
        except ValidationError as e:
            logger.warning("Rejected malformed webhook: %s", e.errors()[:1])
            return JSONResponse(status_code=400, content={"error": "invalid event payload"})

        background.add_task(_dispatch, coordinator, event)
        return {
            "status": "accepted",
            "event_type": str(event.event_type),
            "item_id": event.item_id,
            "full_sync": event.requires_full_sync,
        }

    return app


async def serve(config: Config, coordinator: SyncCoordinator) -> None:
    """Start the health/webhook server."""
    import uvicorn

    app = create_app(config, coordinator)
    uvi_config = uvicorn.Config(
        app,
        host=config.webhook.host,
        port=config.webhook.port,
        log_level="warning",
    )
    server = uvicorn.Server(uvi_config)
    await server.serve()
