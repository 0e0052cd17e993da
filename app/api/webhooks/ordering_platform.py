"""
Ordering platform webhook (GloriaFood).

הבקשה מאומתת, נרשמת ב-webhook log ורק אז מאושרת ב-202. העיבוד עצמו
רץ ב-worker pool (queued) או לפני התשובה (inline).
"""
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from app.api.dependencies.engine import get_engine
from app.core.logging import get_logger
from app.domain.engine import DispatchEngine

logger = get_logger(__name__)

router = APIRouter()


class WebhookAcceptedResponse(BaseModel):
    """תשובת ack לאחר רישום עמיד"""
    status: str = "accepted"
    event_id: str = Field(description="מזהה האירוע הראשון שנרשם")
    event_ids: list[str] = Field(default_factory=list, description="כל האירועים שנרשמו בבקשה")


@router.post(
    "/orders",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=WebhookAcceptedResponse,
    summary="Webhook הזמנות מפלטפורמת ההזמנות",
    description=(
        "מקבל הזמנה בודדת או batch בפורמט {\"orders\": [...]}. "
        "כל הזמנה נרשמת כאירוע נפרד. ה-ack נשלח רק אחרי שהאירועים נשמרו."
    ),
    responses={
        202: {"description": "האירועים נרשמו"},
        400: {"description": "payload לא תקין"},
        401: {"description": "חתימה חסרה או שגויה"},
        503: {"description": "ה-event log לא זמין"},
    },
)
async def receive_order_webhook(
    request: Request,
    engine: DispatchEngine = Depends(get_engine),
) -> WebhookAcceptedResponse:
    body = await request.body()
    event_ids = await engine.ingest_platform_webhook(body, request.headers)
    logger.info("Order webhook accepted", extra_data={"event_ids": event_ids})
    return WebhookAcceptedResponse(event_id=event_ids[0], event_ids=event_ids)
