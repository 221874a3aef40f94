"""
Batch endpoints.

GET    /batches                        Paginated list with optional status filter.
GET    /batches/{id}                   Batch detail with its payments.
PATCH  /batches/{id}                   Rename / describe.
DELETE /batches/{id}                   Delete (draft/uploaded only).
PUT    /batches/{id}/payment-method    Switch provider (draft/uploaded only).
GET    /batches/{id}/payments          Paginated payments.
POST   /batches/{id}/process           Submit pending payments, return the summary.
POST   /batches/{id}/process/stream    Submit pending payments, stream progress (SSE).
POST   /batches/{id}/sync              Reconcile statuses with the provider.
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkpay.api.common import Pagination, http_error, iso, load_json, paginate
from bulkpay.database import get_session, get_session_factory
from bulkpay.engine.batches import (
    delete_batch,
    get_batch,
    list_batches,
    list_payments,
    set_payment_method,
    update_batch,
)
from bulkpay.engine.errors import BatchError
from bulkpay.engine.processor import process_batch, start_background_stream
from bulkpay.engine.reconciler import sync_batch
from bulkpay.models.batch import Payment, PaymentBatch
from bulkpay.models.enums import BatchStatus, Environment, PaymentMethod, PaymentStatus
from bulkpay.providers.registry import GatewayRegistry, get_registry

logger = logging.getLogger("bulkpay.api")

router = APIRouter(prefix="/batches", tags=["batches"])


class PaymentSummary(BaseModel):
    id: str
    batch_id: str
    recipient_name: str
    recipient_email: str
    amount: float
    currency: Optional[str]
    payment_method: str
    status: str
    provider_item_id: Optional[str]
    provider_transaction_id: Optional[str]
    provider_status: Optional[str]
    error_message: Optional[str]
    error_code: Optional[str]
    processed_at: Optional[str]
    completed_at: Optional[str]

    model_config = {"from_attributes": True}


class BatchResponse(BaseModel):
    batch_id: str
    name: str
    description: Optional[str]
    payment_method: str
    environment: str
    provider_config: Optional[dict] = None
    status: str
    total_payments: int
    total_amount: float
    currency: Optional[str]
    success_count: int
    failure_count: int
    pending_count: int
    provider_batch_id: Optional[str]
    provider_batch_status: Optional[str]
    error_message: Optional[str]
    source_file_name: Optional[str]
    uploaded_at: Optional[str]
    processed_at: Optional[str]
    completed_at: Optional[str]
    payments: Optional[list[PaymentSummary]] = None

    model_config = {"from_attributes": True}


class BatchList(BaseModel):
    batches: list[BatchResponse]
    pagination: Pagination


class PaymentList(BaseModel):
    payments: list[PaymentSummary]
    pagination: Pagination


class BatchUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class PaymentMethodUpdate(BaseModel):
    payment_method: PaymentMethod
    environment: Optional[Environment] = None
    provider_config: Optional[dict[str, Any]] = None


class ProcessRequest(BaseModel):
    """Provider config overrides, merged over the batch's stored config."""

    campaign_id: Optional[str] = None
    message: Optional[str] = None
    subject: Optional[str] = None
    email_subject: Optional[str] = None
    email_message: Optional[str] = None
    batch_size: Optional[int] = None
    delay_ms: Optional[int] = None
    auto_approve: Optional[bool] = None
    buy_currency: Optional[str] = None
    purpose_code: Optional[str] = None


class ProcessResponse(BaseModel):
    batch: BatchResponse
    total: int
    processed: int
    successful: int
    failed: int
    has_failures: bool
    errors: list[dict]
    note: Optional[str] = None


class SyncResponse(BaseModel):
    batch_id: str
    batch_status: str
    items_processed: int
    payments_updated: int
    details_refreshed: int
    fully_synced: bool
    message: str
    successful: int
    failed: int


def _payment_to_summary(p: Payment) -> PaymentSummary:
    return PaymentSummary(
        id=p.id,
        batch_id=p.batch_id,
        recipient_name=p.recipient_name,
        recipient_email=p.recipient_email,
        amount=p.amount,
        currency=p.currency,
        payment_method=p.payment_method,
        status=p.status,
        provider_item_id=p.provider_item_id,
        provider_transaction_id=p.provider_transaction_id,
        provider_status=p.provider_status,
        error_message=p.error_message,
        error_code=p.error_code,
        processed_at=iso(p.processed_at),
        completed_at=iso(p.completed_at),
    )


def _batch_to_response(
    batch: PaymentBatch,
    payments_list: list[Payment] | None = None,
) -> BatchResponse:
    payments = None
    if payments_list is not None:
        payments = [_payment_to_summary(p) for p in payments_list]

    return BatchResponse(
        batch_id=batch.batch_id,
        name=batch.name,
        description=batch.description,
        payment_method=batch.payment_method,
        environment=batch.environment,
        provider_config=load_json(batch.provider_config),
        status=batch.status,
        total_payments=batch.total_payments or 0,
        total_amount=batch.total_amount or 0.0,
        currency=batch.currency,
        success_count=batch.success_count or 0,
        failure_count=batch.failure_count or 0,
        pending_count=batch.pending_count or 0,
        provider_batch_id=batch.provider_batch_id,
        provider_batch_status=batch.provider_batch_status,
        error_message=batch.error_message,
        source_file_name=batch.source_file_name,
        uploaded_at=iso(batch.uploaded_at),
        processed_at=iso(batch.processed_at),
        completed_at=iso(batch.completed_at),
        payments=payments,
    )


def _overrides(body: Optional[ProcessRequest]) -> Optional[dict[str, Any]]:
    return body.model_dump(exclude_none=True) if body else None


@router.get("", response_model=BatchList)
async def get_batches(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[BatchStatus] = None,
    session: AsyncSession = Depends(get_session),
):
    """List batches, newest first."""
    batches, total = await list_batches(session, page, limit, status.value if status else None)
    return BatchList(
        batches=[_batch_to_response(b) for b in batches],
        pagination=paginate(page, limit, total),
    )


@router.get("/{batch_id}", response_model=BatchResponse)
async def get_batch_detail(batch_id: str, session: AsyncSession = Depends(get_session)):
    try:
        batch = await get_batch(session, batch_id)
    except BatchError as e:
        raise http_error(e)
    payments, _ = await list_payments(session, batch_id)
    return _batch_to_response(batch, payments_list=payments)


@router.patch("/{batch_id}", response_model=BatchResponse)
async def patch_batch(batch_id: str, body: BatchUpdate, session: AsyncSession = Depends(get_session)):
    try:
        batch = await update_batch(session, batch_id, name=body.name, description=body.description)
    except BatchError as e:
        raise http_error(e)
    return _batch_to_response(batch)


@router.delete("/{batch_id}")
async def remove_batch(batch_id: str, session: AsyncSession = Depends(get_session)):
    try:
        await delete_batch(session, batch_id)
    except BatchError as e:
        raise http_error(e)
    return {"deleted": True, "batch_id": batch_id}


@router.put("/{batch_id}/payment-method", response_model=BatchResponse)
async def put_payment_method(
    batch_id: str,
    body: PaymentMethodUpdate,
    session: AsyncSession = Depends(get_session),
):
    try:
        batch = await set_payment_method(
            session,
            batch_id,
            body.payment_method.value,
            environment=body.environment.value if body.environment else None,
            provider_config=body.provider_config,
        )
    except BatchError as e:
        raise http_error(e)
    return _batch_to_response(batch)


@router.get("/{batch_id}/payments", response_model=PaymentList)
async def get_batch_payments(
    batch_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    status: Optional[PaymentStatus] = None,
    session: AsyncSession = Depends(get_session),
):
    try:
        await get_batch(session, batch_id)
    except BatchError as e:
        raise http_error(e)
    payments, total = await list_payments(session, batch_id, page, limit, status.value if status else None)
    return PaymentList(
        payments=[_payment_to_summary(p) for p in payments],
        pagination=paginate(page, limit, total),
    )


@router.post("/{batch_id}/process", response_model=ProcessResponse)
async def process(
    batch_id: str,
    body: Optional[ProcessRequest] = None,
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
):
    """
    Submit every pending payment of the batch to its provider.

    A mixed outcome is a 200 with ``has_failures``. When every submitted
    payment failed the answer is a 400 carrying the first item error.
    """
    try:
        outcome = await process_batch(session, batch_id, registry, _overrides(body))
    except BatchError as e:
        raise http_error(e)

    if outcome.batch.status == BatchStatus.FAILED.value:
        raise HTTPException(status_code=400, detail={
            "error": "All Payments Failed",
            "message": outcome.batch.error_message,
            "suggestion": "Review the per-payment errors, fix the recipients and upload them again.",
            "action": "Review failed payments",
            "severity": "error",
            "retryable": False,
            "details": {"batch_id": batch_id, "failed": outcome.failed, "errors": outcome.errors},
        })

    payments, _ = await list_payments(session, batch_id)
    return ProcessResponse(
        batch=_batch_to_response(outcome.batch, payments_list=payments),
        total=outcome.total,
        processed=outcome.processed,
        successful=outcome.successful,
        failed=outcome.failed,
        has_failures=outcome.has_failures,
        errors=outcome.errors,
        note=outcome.note,
    )


@router.post("/{batch_id}/process/stream")
async def process_stream(
    batch_id: str,
    body: Optional[ProcessRequest] = None,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    registry: GatewayRegistry = Depends(get_registry),
):
    """
    Submit pending payments one at a time and stream progress as SSE.

    The run lives in a background task: a client that disconnects stops
    receiving events, the batch still runs to completion.
    """
    queue = start_background_stream(session_factory, batch_id, registry, _overrides(body))

    first = await queue.get()
    if isinstance(first, BatchError):
        raise http_error(first)

    async def events():
        item = first
        while item is not None:
            if isinstance(item, BatchError):
                item = {"done": True, **item.descriptor.to_dict()}
            yield f"data: {json.dumps(item, default=str)}\n\n"
            item = await queue.get()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{batch_id}/sync", response_model=SyncResponse)
async def sync(
    batch_id: str,
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
):
    """Re-query the provider and refresh local statuses."""
    try:
        outcome = await sync_batch(session, batch_id, registry)
    except BatchError as e:
        raise http_error(e)
    return SyncResponse(
        batch_id=batch_id,
        batch_status=outcome.batch.status,
        items_processed=outcome.items_processed,
        payments_updated=outcome.payments_updated,
        details_refreshed=outcome.details_refreshed,
        fully_synced=outcome.fully_synced,
        message=outcome.message,
        successful=outcome.successful,
        failed=outcome.failed,
    )
