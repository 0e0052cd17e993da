"""
Order Dispatch Service - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import AsyncSessionLocal, engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "webhooks",
        "description": "Webhooks נכנסים: הזמנות מפלטפורמת ההזמנות ועדכוני סטטוס מהשליחויות.",
    },
    {"name": "dashboard", "description": "תמונת מצב: הזמנות, משלוחים והתראות פתוחות."},
    {
        "name": "admin-debug",
        "description": "כלי תפעול: circuit breakers, אירועי webhook, retry ידני ו-dispatch ידני.",
    },
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "מנוע אמינות ו-dispatch להזמנות: webhooks מפלטפורמת ההזמנות "
        "הופכים לבקשות משלוח ברשת השליחויות."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging, webhook rate limit)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support a local dashboard without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and start the dispatch engine"""
    from app.domain.engine import DispatchEngine

    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    dispatch_engine = DispatchEngine(settings, AsyncSessionLocal)
    await dispatch_engine.load_merchants()
    # start() מריץ סריקת recovery: משלוחים שה-due שלהם עבר בזמן שהשירות היה למטה
    await dispatch_engine.start()
    app.state.engine = dispatch_engine


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    dispatch_engine = getattr(app.state, "engine", None)
    if dispatch_engine is not None:
        await dispatch_engine.stop()
        app.state.engine = None
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness)",
    description=(
        "בדיקה קלה שהתהליך חי ומגיב. "
        "לא בודק תלויות חיצוניות, כדי למנוע restart מיותר בגלל כשלון DB/Redis."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness check - התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness)",
    description=(
        "בדיקת התלויות: DB (event log), Redis, Celery broker. "
        "מחזיר status=healthy אם הכל תקין, או status=degraded עם 503."
    ),
    responses={
        200: {
            "description": "כל התלויות תקינות",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "redis": "ok", "celery": "ok"}
                }
            },
        },
        503: {
            "description": "לפחות תלות אחת לא זמינה",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "celery": "ok",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness check - בדיקת התלויות החיצוניות."""
    from app.domain.services.health_service import check_readiness

    dispatch_engine = getattr(app.state, "engine", None)
    result = await check_readiness(
        dispatch_engine.circuit_breaker_status() if dispatch_engine is not None else None
    )
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
