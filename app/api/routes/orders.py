"""
Dashboard snapshots - הזמנות, משלוחים והתראות פתוחות.

קריאה בלבד. כל הנתונים נקראים מאותו DB שה-handlers כותבים אליו.
"""
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.engine import get_engine, get_engine_session
from app.db.models.delivery import Delivery, DeliveryStatus
from app.db.models.order import Order, OrderStatus
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.domain.engine import DispatchEngine
from app.domain.services.webhook_log_service import WebhookLogService

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


# ─── Pydantic models ────────────────────────────────────────────────────────

class DeliveryResponse(BaseModel):
    external_delivery_id: str
    courier_delivery_id: str | None
    status: str
    dispatch_due_at: datetime | None
    dispatched_at: datetime | None
    dispatch_failed_at: datetime | None
    last_error: str | None
    tracking_url: str | None
    driver_name: str | None
    updated_at: datetime | None


class OrderResponse(BaseModel):
    store_id: str
    platform_order_id: str
    status: str
    fulfillment_type: str
    promised_time: datetime | None
    created_at: datetime | None
    updated_at: datetime | None
    delivery: DeliveryResponse | None = None


class OrderDetailResponse(OrderResponse):
    raw_data: dict[str, Any] = Field(default_factory=dict)


class EventAlertResponse(BaseModel):
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


class AlertsResponse(BaseModel):
    """כל מה שדורש התערבות מפעיל"""
    failed_events: list[EventAlertResponse]
    stalled_events: list[EventAlertResponse]
    dispatch_failures: list[DeliveryResponse]


def delivery_to_response(delivery: Delivery) -> DeliveryResponse:
    return DeliveryResponse(
        external_delivery_id=delivery.external_delivery_id,
        courier_delivery_id=delivery.courier_delivery_id,
        status=delivery.status.value,
        dispatch_due_at=delivery.dispatch_due_at,
        dispatched_at=delivery.dispatched_at,
        dispatch_failed_at=delivery.dispatch_failed_at,
        last_error=delivery.last_error,
        tracking_url=delivery.tracking_url,
        driver_name=delivery.driver_name,
        updated_at=delivery.updated_at,
    )


def event_to_alert(event: WebhookEvent) -> EventAlertResponse:
    return EventAlertResponse(
        id=event.id,
        source=event.source.value,
        event_type=event.event_type,
        store_id=event.store_id,
        resource_key=event.resource_key,
        status=event.status.value,
        attempt_count=event.attempt_count,
        last_error=event.last_error,
        created_at=event.created_at,
        updated_at=event.updated_at,
    )


def _order_fields(order: Order, delivery: Delivery | None) -> dict[str, Any]:
    return {
        "store_id": order.store_id,
        "platform_order_id": order.platform_order_id,
        "status": order.status.value,
        "fulfillment_type": order.fulfillment_type.value,
        "promised_time": order.promised_time,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "delivery": delivery_to_response(delivery) if delivery else None,
    }


def _parse_enum(enum_cls, value: str | None):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(s.value for s in enum_cls)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"סטטוס לא תקין. אפשרויות: {valid}",
        )


# ─── Orders ─────────────────────────────────────────────────────────────────

@router.get(
    "/orders",
    response_model=list[OrderResponse],
    summary="רשימת הזמנות",
)
async def list_orders(
    db: AsyncSession = Depends(get_engine_session),
    store_id: Optional[str] = Query(default=None),
    order_status: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[OrderResponse]:
    target = _parse_enum(OrderStatus, order_status)
    query = select(Order, Delivery).outerjoin(Delivery, Delivery.order_id == Order.id)
    if store_id:
        query = query.where(Order.store_id == store_id)
    if target is not None:
        query = query.where(Order.status == target)
    query = query.order_by(Order.created_at.desc()).offset(offset).limit(limit)

    result = await db.execute(query)
    return [OrderResponse(**_order_fields(order, delivery)) for order, delivery in result.all()]


@router.get(
    "/orders/{store_id}/{platform_order_id}",
    response_model=OrderDetailResponse,
    summary="פרטי הזמנה",
    responses={404: {"description": "הזמנה לא נמצאה"}},
)
async def get_order(
    store_id: str,
    platform_order_id: str,
    db: AsyncSession = Depends(get_engine_session),
) -> OrderDetailResponse:
    result = await db.execute(
        select(Order, Delivery)
        .outerjoin(Delivery, Delivery.order_id == Order.id)
        .where(Order.store_id == store_id, Order.platform_order_id == platform_order_id)
    )
    row = result.first()
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"הזמנה {store_id}/{platform_order_id} לא נמצאה",
        )
    order, delivery = row
    return OrderDetailResponse(**_order_fields(order, delivery), raw_data=order.raw_data or {})


# ─── Deliveries ─────────────────────────────────────────────────────────────

@router.get(
    "/deliveries",
    response_model=list[DeliveryResponse],
    summary="רשימת משלוחים",
)
async def list_deliveries(
    db: AsyncSession = Depends(get_engine_session),
    delivery_status: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[DeliveryResponse]:
    target = _parse_enum(DeliveryStatus, delivery_status)
    query = select(Delivery)
    if target is not None:
        query = query.where(Delivery.status == target)
    query = query.order_by(Delivery.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return [delivery_to_response(d) for d in result.scalars().all()]


# ─── Alerts ─────────────────────────────────────────────────────────────────

@router.get(
    "/alerts",
    response_model=AlertsResponse,
    summary="התראות פתוחות",
    description=(
        "אירועים שנכשלו סופית, אירועים תקועים (pending/processing מעבר ל-"
        "WEBHOOK_STALLED_AFTER_SECONDS) ומשלוחים שה-dispatch שלהם נכשל."
    ),
)
async def get_alerts(
    engine: DispatchEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_engine_session),
    limit: int = Query(default=50, ge=1, le=200),
) -> AlertsResponse:
    log = WebhookLogService(db)
    failed = await log.list_by_status(WebhookEventStatus.FAILED, limit=limit)
    cutoff = engine.clock.now() - timedelta(seconds=engine.settings.WEBHOOK_STALLED_AFTER_SECONDS)
    stalled = await log.find_stalled(cutoff, limit=limit)

    result = await db.execute(
        select(Delivery)
        .where(Delivery.dispatch_failed_at.is_not(None), Delivery.dispatched_at.is_(None))
        .order_by(Delivery.dispatch_failed_at.desc())
        .limit(limit)
    )
    return AlertsResponse(
        failed_events=[event_to_alert(e) for e in failed],
        stalled_events=[event_to_alert(e) for e in stalled],
        dispatch_failures=[delivery_to_response(d) for d in result.scalars().all()],
    )
