"""
Bulkpay: bulk payout orchestration API.

Drives batches of payments through PayPal Payouts, Giftogram gift cards
and XE bank transfers, tracks every payment's lifecycle locally and
reconciles asynchronous settlement through sync calls.

Start the server:
    uvicorn bulkpay.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bulkpay.api.batches import router as batches_router
from bulkpay.api.health import router as health_router
from bulkpay.api.payments import router as payments_router
from bulkpay.api.providers import router as providers_router
from bulkpay.api.uploads import router as uploads_router
from bulkpay.config import settings
from bulkpay.database import init_db
from bulkpay.providers.registry import close_registry

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database on startup; close provider clients on shutdown."""
    await init_db()
    yield
    await close_registry()


app = FastAPI(
    title="Bulkpay",
    description=(
        "Bulk payout orchestration across PayPal Payouts, Giftogram gift cards and XE bank "
        "transfers, with partial-failure handling, status reconciliation, streaming progress "
        "and an immutable audit trail."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(uploads_router, prefix="/api")
app.include_router(batches_router, prefix="/api")
app.include_router(payments_router, prefix="/api")
app.include_router(providers_router, prefix="/api")
