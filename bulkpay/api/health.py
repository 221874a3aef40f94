"""Liveness endpoint."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.database import get_session

logger = logging.getLogger("bulkpay.api")

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Service status and a round-trip to the database."""
    try:
        await session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("Health check database error: %s", e)
        database = "error"
    return {"status": "ok" if database == "ok" else "degraded", "database": database}
