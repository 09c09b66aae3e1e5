"""Webhook server for Notion-driven workflow events.

The server is a thin transport: it verifies the request signature, turns
the body into a single normalized ``WorkflowEvent`` and hands it to the
flow coordinator.
"""

import hashlib
import hmac
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from code_diffusion.config.settings import DiffusionSettings
from code_diffusion.engine.coordinator import FlowCoordinator
from code_diffusion.engine.events import normalize_webhook_payload
from code_diffusion.exceptions import CodeDiffusionError

log = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Notion-Signature"


class HealthResponse(BaseModel):
    """Response model for the health check endpoint."""

    status: str
    service: str
    active_workflows: int
    active_workers: int


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of ``signature`` against the body's HMAC."""
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature)


def create_app(settings: DiffusionSettings, coordinator: FlowCoordinator) -> FastAPI:
    """Build the webhook application around ``coordinator``.

    The coordinator's worker-event loop is started on startup and the
    coordinator is shut down (terminating all workers) on shutdown.
    """
    secret = settings.server.webhook_secret.get_secret_value() if settings.server.webhook_secret else None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if not secret:
            log.warning("webhook_signature_disabled")
        await coordinator.start()
        log.info("webhook_server_started", host=settings.server.host, port=settings.server.port)
        try:
            yield
        finally:
            await coordinator.shutdown()
            log.info("webhook_server_stopped")

    app = FastAPI(title="Code Diffusion Webhook Server", lifespan=lifespan)

    @app.post("/webhook/notion")
    async def notion_webhook(request: Request) -> JSONResponse:
        """Handle Notion webhook events."""
        body = await request.body()

        if secret and not verify_signature(body, request.headers.get(SIGNATURE_HEADER), secret):
            log.warning("webhook_signature_invalid")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from e
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

        try:
            event = normalize_webhook_payload(payload)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid event: {e.error_count()} error(s)") from e

        if event is None:
            log.info("webhook_ignored", type=payload.get("type"))
            return JSONResponse(status_code=202, content={"status": "ignored"})

        log.info("webhook_received", kind=str(event.kind), workflow_id=event.workflow_id)

        try:
            await coordinator.handle_event(event)
        except CodeDiffusionError as e:
            log.error("webhook_processing_failed", error=e.message, exc_info=True)
            raise HTTPException(status_code=422, detail=e.message) from e
        except Exception as e:
            log.error("webhook_processing_unexpected", error=str(e), exc_info=True)
            raise HTTPException(status_code=500, detail="Internal server error") from e

        return JSONResponse(
            status_code=200,
            content={"status": "success", "kind": str(event.kind), "workflow_id": event.workflow_id},
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            service="code-diffusion-webhook",
            active_workflows=len(coordinator.get_active_workflows()),
            active_workers=coordinator.supervisor.active_count,
        )

    return app
