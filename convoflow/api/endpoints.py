"""API endpoints for the conversation engine."""

import json
from datetime import UTC, datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request

from convoflow import __version__
from convoflow.models.api import FollowUpSweepResponse, HealthResponse, WebhookAck
from convoflow.services.engine import Engine, get_engine
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post("/webhook", response_model=WebhookAck, tags=["Webhook"])
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    tenant_id: str | None = Query(default=None),
    engine: Engine = Depends(get_engine),
) -> WebhookAck:
    """Accept a messaging gateway event.

    The event is acknowledged immediately; processing happens in the background.
    """
    if not tenant_id:
        logger.error("Webhook received without tenant_id")
        raise HTTPException(status_code=400, detail="Missing tenant_id query parameter")

    raw_body = await request.body()
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Webhook body for tenant {tenant_id} is not valid JSON: {e}")
        raise HTTPException(status_code=400, detail="Request body is not valid JSON") from e

    background_tasks.add_task(engine.gateway.handle_event, tenant_id, payload)
    return WebhookAck()


@router.api_route("/cron/follow-ups", methods=["GET", "POST"], response_model=FollowUpSweepResponse, tags=["Cron"])
async def run_follow_ups(
    x_cron_token: str | None = Header(default=None),
    engine: Engine = Depends(get_engine),
) -> FollowUpSweepResponse:
    """Run one follow-up sweep across all tenants."""
    if engine.config.cron_token and x_cron_token != engine.config.cron_token:
        logger.warning("Follow-up sweep rejected: invalid cron token")
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        result = await engine.follow_ups.run_sweep()
    except Exception as e:
        logger.error(f"Follow-up sweep failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Follow-up sweep failed") from e

    return FollowUpSweepResponse(
        processed=result.processed,
        failed=result.failed,
        message=f"Follow-up sweep finished: {result.processed} sent, {result.failed} failed.",
    )


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
