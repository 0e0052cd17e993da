"""
גישה ל-DispatchEngine מתוך routes.

ה-engine נבנה ב-startup ונשמר ב-``app.state.engine``; בדיקות מחליפות
אותו דרך ``app.dependency_overrides[get_engine]``.
"""
from typing import AsyncIterator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.engine import DispatchEngine


def get_engine(request: Request) -> DispatchEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dispatch engine is not running",
        )
    return engine


async def get_engine_session(
    engine: DispatchEngine = Depends(get_engine),
) -> AsyncIterator[AsyncSession]:
    """Session מה-factory של ה-engine (אותו DB שה-handlers כותבים אליו)"""
    async with engine.session_factory() as session:
        yield session
