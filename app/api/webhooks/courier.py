"""
Courier network webhook (DoorDash Drive) - עדכוני סטטוס משלוח.
"""
from fastapi import APIRouter, Depends, Request, status

from app.api.dependencies.engine import get_engine
from app.api.webhooks.ordering_platform import WebhookAcceptedResponse
from app.core.logging import get_logger
from app.domain.engine import DispatchEngine

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/courier",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=WebhookAcceptedResponse,
    summary="Webhook סטטוס משלוח מרשת השליחויות",
    responses={
        202: {"description": "האירוע נרשם"},
        400: {"description": "payload לא תקין"},
        401: {"description": "חתימה חסרה או שגויה"},
        503: {"description": "ה-event log לא זמין"},
    },
)
async def receive_courier_webhook(
    request: Request,
    engine: DispatchEngine = Depends(get_engine),
) -> WebhookAcceptedResponse:
    body = await request.body()
    event_id = await engine.ingest_courier_webhook(body, request.headers)
    logger.info("Courier webhook accepted", extra_data={"event_id": event_id})
    return WebhookAcceptedResponse(event_id=event_id, event_ids=[event_id])
