"""
FSM webhook receiver.

Acknowledges every delivery immediately: the inbox row is written and the
event handed to the in-process queue; processing happens after the response.
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_fsm_webhook_signature
from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.webhook_ingest_service import WebhookIngestGateway, WebhookPayload
from app.workers.retry_processor import get_retry_processor

logger = get_logger(__name__)

router = APIRouter()


class WebhookAckResponse(BaseModel):
    status: str
    event_id: str


@router.post(
    "/fsm",
    response_model=WebhookAckResponse,
    summary="Receive an FSM webhook",
    description=(
        "Stores the event in the inbox (deduplicated by webhookEventId) and returns at once. "
        "status is accepted, duplicate (already received) or ignored (unsupported topic)."
    ),
    responses={
        200: {"description": "Event acknowledged"},
        400: {"description": "Malformed payload"},
        403: {"description": "Missing or invalid X-FSM-Signature"},
    },
    tags=["Webhooks"],
)
async def fsm_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(verify_fsm_webhook_signature),
) -> WebhookAckResponse:
    body = await request.body()
    try:
        payload = WebhookPayload.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Malformed FSM webhook payload", extra_data={"errors": e.error_count()})
        raise AppException(
            message="Malformed webhook payload",
            error_code=ErrorCode.INVALID_PAYLOAD,
            status_code=400,
            details={"errors": e.errors(include_url=False, include_context=False)},
        )

    gateway = WebhookIngestGateway(db, enqueue=get_retry_processor().enqueue)
    result = await gateway.receive(payload)
    return WebhookAckResponse(status=result.status.value, event_id=result.event_id)
