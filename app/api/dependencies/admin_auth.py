"""
אימות מפתח API עבור ה-endpoints של אדמין ו-dashboard.

המפתח נקרא מה-Settings של ה-engine הרץ (ולא מה-settings הגלובלי),
כך שכל engine, כולל engines של בדיקות, נושא את ההגדרה שלו.

שימוש:
    @router.get("/debug/circuit-breakers")
    async def circuit_breakers(
        _: None = Depends(require_admin_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from app.api.dependencies.engine import get_engine
from app.core.logging import get_logger
from app.domain.engine import DispatchEngine

logger = get_logger(__name__)

ADMIN_API_KEY_HEADER = "X-Admin-API-Key"

_api_key_header = APIKeyHeader(name=ADMIN_API_KEY_HEADER, auto_error=False)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
    engine: DispatchEngine = Depends(get_engine),
) -> None:
    """
    401 כשהמפתח חסר, 403 כשהוא שגוי.

    ADMIN_API_KEY ריק חוסם את כל ה-endpoints. ההשוואה ב-constant time.
    """
    expected = engine.settings.ADMIN_API_KEY
    if not expected:
        logger.warning("Admin endpoint rejected, ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing API key, required header: {ADMIN_API_KEY_HEADER}",
        )

    if not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("Admin endpoint rejected, invalid API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
