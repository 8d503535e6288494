"""Inbound provider webhooks (WhatsApp, Telegram) for configured channels."""

import json
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from switchboard.database import get_db
from switchboard.logging_config import get_logger
from switchboard.models import Channel
from switchboard.schemas.webhook import WebhookAcceptedResponse
from switchboard.services.errors import QueueSaturated
from switchboard.services.job_queue import JobQueueManager, QueueName, get_job_queue_manager

logger = get_logger("webhook_router")

router = APIRouter(tags=["webhooks"])


async def _read_body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(raw.decode("utf-8")))
    try:
        body = json.loads(raw)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Body must be JSON or form encoded", "code": "InvalidPayload"},
        )
    if not isinstance(body, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Body must be a JSON object", "code": "InvalidPayload"},
        )
    return body


@router.post("/webhooks/{channel_id}", response_model=WebhookAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(
    channel_id: str,
    request: Request,
    db: Session = Depends(get_db),
    manager: JobQueueManager = Depends(get_job_queue_manager),
):
    channel = db.query(Channel).filter(Channel.id == channel_id).first()
    if not channel:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": f"Channel not found: {channel_id}", "code": "ChannelNotFound"},
        )
    if not channel.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": f"Channel is inactive: {channel_id}", "code": "ChannelInactive"},
        )

    body = await _read_body(request)
    try:
        job_id = manager.enqueue(
            QueueName.WEBHOOK_PROCESSING,
            {
                "direction": "inbound",
                "channel_id": channel.id,
                "channel_type": channel.channel_type,
                "body": body,
            },
            name=f"{channel.channel_type}-inbound",
        )
    except QueueSaturated as exc:
        logger.warning("Webhook rejected, queue saturated", extra={"context": {"channel_id": channel_id}})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": exc.message, "code": exc.code},
        )

    return WebhookAcceptedResponse(jobId=job_id)
