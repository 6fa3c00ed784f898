from __future__ import annotations

from fastapi import APIRouter, Depends
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kitchen_api.db.session import get_session


router = APIRouter()


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/readyz", summary="Database readiness check")
async def service_readiness(session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Readiness probe failed", error=str(exc))
        return {"status": "error", "database": "unavailable"}
    return {"status": "ready", "database": "ok"}
