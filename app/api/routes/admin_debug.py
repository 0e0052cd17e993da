"""
Admin Debug Endpoints - כלי תפעול לניטור ותחזוקה ללא גישה ישירה ל-DB.

1. סטטוס circuit breakers (פלטפורמת הזמנות / שליחויות)
2. סיכום ושאילתת אירועי webhook, כולל retry ידני לאירוע שנכשל
3. dispatch ידני של משלוח ("dispatch now")
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.engine import get_engine, get_engine_session
from app.core.logging import get_logger
from app.db.models.webhook_event import EventSource, WebhookEvent, WebhookEventStatus
from app.domain.engine import DispatchEngine
from app.domain.services.webhook_log_service import WebhookLogService

logger = get_logger(__name__)

router = APIRouter()


# ─── Pydantic models ────────────────────────────────────────────────────────

class CircuitBreakerStatusResponse(BaseModel):
    """סטטוס של circuit breaker בודד"""
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    success_count: int
    half_open_calls: int
    retry_after_seconds: float = Field(
        description="שניות עד שניסיון חוזר אפשרי (0 אם לא פתוח)"
    )


class WebhookEventResponse(BaseModel):
    """אירוע webhook בודד"""
    id: str
    source: str
    event_type: str
    store_id: str | None
    resource_key: str | None
    status: str
    attempt_count: int
    last_error: str | None
    created_at: datetime | None
    updated_at: datetime | None
    processed_at: datetime | None


class WebhookEventDetailResponse(WebhookEventResponse):
    raw_payload: dict[str, Any]


class WebhookEventSummaryResponse(BaseModel):
    """ספירה לפי סטטוס"""
    pending: int = 0
    processing: int = 0
    succeeded: int = 0
    failed: int = 0
    total: int = 0


class EventRetryResponse(BaseModel):
    """תשובה ל-retry ידני"""
    event_id: str
    previous_status: str
    new_status: str
    attempt_count: int
    last_error: str | None


class DispatchNowResponse(BaseModel):
    store_id: str
    platform_order_id: str
    triggered: bool = Field(description="false אם כבר רץ dispatch פתוח למשלוח")
    event_id: str | None = None
    event_status: str | None = None
    error: str | None = None


def _event_fields(event: WebhookEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "source": event.source.value,
        "event_type": event.event_type,
        "store_id": event.store_id,
        "resource_key": event.resource_key,
        "status": event.status.value,
        "attempt_count": event.attempt_count,
        "last_error": event.last_error,
        "created_at": event.created_at,
        "updated_at": event.updated_at,
        "processed_at": event.processed_at,
    }


_ADMIN_RESPONSES = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי"},
}


# ─── 1. Circuit Breakers ────────────────────────────────────────────────────

@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="סטטוס circuit breakers",
    description="מצב ה-breaker של כל יעד חיצוני (פלטפורמת הזמנות, שליחויות).",
    responses=_ADMIN_RESPONSES,
)
async def get_circuit_breaker_status(
    _: None = Depends(require_admin_api_key),
    engine: DispatchEngine = Depends(get_engine),
) -> list[CircuitBreakerStatusResponse]:
    return [
        CircuitBreakerStatusResponse(**snapshot)
        for snapshot in engine.circuit_breaker_status().values()
    ]


# ─── 2. אירועי webhook + retry ───────────────────────────────────────────────

@router.get(
    "/events/summary",
    response_model=WebhookEventSummaryResponse,
    summary="סיכום כמותי של אירועי webhook",
    responses=_ADMIN_RESPONSES,
)
async def get_event_summary(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_engine_session),
) -> WebhookEventSummaryResponse:
    counts = await WebhookLogService(db).count_by_status()
    return WebhookEventSummaryResponse(**counts, total=sum(counts.values()))


@router.get(
    "/events",
    response_model=list[WebhookEventResponse],
    summary="שאילתת אירועי webhook",
    description="ברירת מחדל: אירועים שנכשלו סופית (failed) בלבד.",
    responses={400: {"description": "סינון לא תקין"}, **_ADMIN_RESPONSES},
)
async def list_events(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_engine_session),
    event_status: Optional[str] = Query(
        default="failed",
        description="pending, processing, succeeded, failed",
    ),
    source: Optional[str] = Query(default=None, description="ordering_platform, courier, dispatch_scheduler"),
    store_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[WebhookEventResponse]:
    try:
        status_filter = WebhookEventStatus(event_status) if event_status else None
        source_filter = EventSource(source) if source else None
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    events = await WebhookLogService(db).list_by_status(
        status_filter,
        source=source_filter,
        store_id=store_id,
        limit=limit,
        offset=offset,
    )
    return [WebhookEventResponse(**_event_fields(e)) for e in events]


@router.get(
    "/events/{event_id}",
    response_model=WebhookEventDetailResponse,
    summary="פרטי אירוע כולל ה-payload",
    responses={404: {"description": "אירוע לא נמצא"}, **_ADMIN_RESPONSES},
)
async def get_event(
    event_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_engine_session),
) -> WebhookEventDetailResponse:
    event = await WebhookLogService(db).require(event_id)
    return WebhookEventDetailResponse(**_event_fields(event), raw_payload=event.raw_payload or {})


@router.post(
    "/events/{event_id}/retry",
    response_model=EventRetryResponse,
    summary="retry ידני לאירוע שנכשל",
    description=(
        "מחזיר אירוע failed ל-pending עם תקציב ניסיונות חדש ומעבד אותו. "
        "עובד רק על אירועים בסטטוס failed."
    ),
    responses={
        404: {"description": "אירוע לא נמצא"},
        409: {"description": "האירוע לא בסטטוס failed"},
        **_ADMIN_RESPONSES,
    },
)
async def retry_event(
    event_id: str,
    _: None = Depends(require_admin_api_key),
    engine: DispatchEngine = Depends(get_engine),
) -> EventRetryResponse:
    event = await engine.retry_failed_event(event_id)
    logger.info(
        "Manual retry requested by admin",
        extra_data={"event_id": event_id, "new_status": event.status.value},
    )
    return EventRetryResponse(
        event_id=event.id,
        previous_status=WebhookEventStatus.FAILED.value,
        new_status=event.status.value,
        attempt_count=event.attempt_count,
        last_error=event.last_error,
    )


# ─── 3. Dispatch ידני ───────────────────────────────────────────────────────

@router.post(
    "/orders/{store_id}/{platform_order_id}/dispatch",
    response_model=DispatchNowResponse,
    summary="dispatch מיידי למשלוח של הזמנה",
    description="עוקף את זמן ה-dispatch המתוזמן ומנקה סימון כישלון קודם.",
    responses={404: {"description": "הזמנה או משלוח לא נמצאו"}, **_ADMIN_RESPONSES},
)
async def dispatch_now(
    store_id: str,
    platform_order_id: str,
    _: None = Depends(require_admin_api_key),
    engine: DispatchEngine = Depends(get_engine),
) -> DispatchNowResponse:
    outcome = await engine.dispatch_now(store_id, platform_order_id)
    if outcome is None:
        return DispatchNowResponse(store_id=store_id, platform_order_id=platform_order_id, triggered=False)
    return DispatchNowResponse(
        store_id=store_id,
        platform_order_id=platform_order_id,
        triggered=True,
        event_id=outcome.event_id,
        event_status=outcome.status.value,
        error=outcome.error,
    )
