"""
Payment query, trace and operator endpoints.

GET  /payments/stats          Counts and amounts by status and method.
GET  /payments/{id}           A single payment with full details.
GET  /payments/{id}/trace     The payment and its audit trail.
PUT  /payments/{id}/status    Manual status change through the state machine.
POST /payments/{id}/approve   Approve a bank transfer contract.
POST /payments/{id}/cancel    Cancel a payment (bank transfer contracts at XE too).
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.api.common import http_error, iso, load_json
from bulkpay.audit.logger import payment_trail
from bulkpay.database import get_session
from bulkpay.engine.errors import BatchError
from bulkpay.engine.payment_ops import (
    approve_payment,
    cancel_payment,
    get_payment,
    payment_stats,
    update_payment_status,
)
from bulkpay.models.batch import Payment
from bulkpay.models.enums import PaymentStatus
from bulkpay.providers.registry import GatewayRegistry, get_registry

router = APIRouter(prefix="/payments", tags=["payments"])


class PaymentDetail(BaseModel):
    id: str
    batch_id: str
    recipient_name: str
    recipient_email: str
    amount: float
    currency: Optional[str]
    notes: Optional[str]
    payment_method: str
    provider_details: Optional[dict] = None
    status: str
    provider_batch_id: Optional[str]
    provider_item_id: Optional[str]
    provider_transaction_id: Optional[str]
    provider_recipient_id: Optional[str]
    provider_status: Optional[str]
    error_message: Optional[str]
    error_code: Optional[str]
    history: Optional[str]
    initiated_at: Optional[str]
    processed_at: Optional[str]
    completed_at: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]

    model_config = {"from_attributes": True}


class AuditEntry(BaseModel):
    id: int
    batch_id: Optional[str]
    action: str
    details: Optional[dict] = None
    timestamp: Optional[str]

    model_config = {"from_attributes": True}


class PaymentTrace(BaseModel):
    payment: PaymentDetail
    audit_trail: list[AuditEntry]


class StatusUpdate(BaseModel):
    status: PaymentStatus
    error_message: Optional[str] = None
    note: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


def _payment_to_detail(p: Payment) -> PaymentDetail:
    return PaymentDetail(
        id=p.id,
        batch_id=p.batch_id,
        recipient_name=p.recipient_name,
        recipient_email=p.recipient_email,
        amount=p.amount,
        currency=p.currency,
        notes=p.notes,
        payment_method=p.payment_method,
        provider_details=load_json(p.provider_details),
        status=p.status,
        provider_batch_id=p.provider_batch_id,
        provider_item_id=p.provider_item_id,
        provider_transaction_id=p.provider_transaction_id,
        provider_recipient_id=p.provider_recipient_id,
        provider_status=p.provider_status,
        error_message=p.error_message,
        error_code=p.error_code,
        history=p.history,
        initiated_at=iso(p.initiated_at),
        processed_at=iso(p.processed_at),
        completed_at=iso(p.completed_at),
        created_at=iso(p.created_at),
        updated_at=iso(p.updated_at),
    )


@router.get("/stats")
async def get_stats(
    period: Optional[str] = Query(None, pattern="^(today|week|month)$"),
    batch_id: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    """Payment counts and amounts, optionally for one period or batch."""
    return await payment_stats(session, period=period, batch_id=batch_id)


@router.get("/{payment_id}", response_model=PaymentDetail)
async def get_payment_detail(payment_id: str, session: AsyncSession = Depends(get_session)):
    try:
        payment = await get_payment(session, payment_id)
    except BatchError as e:
        raise http_error(e)
    return _payment_to_detail(payment)


@router.get("/{payment_id}/trace", response_model=PaymentTrace)
async def get_payment_trace(payment_id: str, session: AsyncSession = Depends(get_session)):
    """
    Full audit trail for a payment.

    Shows every state transition, provider response and rollback.
    """
    try:
        payment = await get_payment(session, payment_id)
    except BatchError as e:
        raise http_error(e)

    logs = await payment_trail(session, payment_id)
    return PaymentTrace(
        payment=_payment_to_detail(payment),
        audit_trail=[
            AuditEntry(
                id=log.id,
                batch_id=log.batch_id,
                action=log.action,
                details=load_json(log.details),
                timestamp=iso(log.timestamp),
            )
            for log in logs
        ],
    )


@router.put("/{payment_id}/status", response_model=PaymentDetail)
async def put_payment_status(payment_id: str, body: StatusUpdate, session: AsyncSession = Depends(get_session)):
    try:
        payment = await update_payment_status(
            session,
            payment_id,
            body.status.value,
            error_message=body.error_message,
            note=body.note,
        )
    except BatchError as e:
        raise http_error(e)
    return _payment_to_detail(payment)


@router.post("/{payment_id}/approve", response_model=PaymentDetail)
async def approve(
    payment_id: str,
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
):
    try:
        payment = await approve_payment(session, payment_id, registry)
    except BatchError as e:
        raise http_error(e)
    return _payment_to_detail(payment)


@router.post("/{payment_id}/cancel", response_model=PaymentDetail)
async def cancel(
    payment_id: str,
    body: Optional[CancelRequest] = None,
    session: AsyncSession = Depends(get_session),
    registry: GatewayRegistry = Depends(get_registry),
):
    try:
        payment = await cancel_payment(session, payment_id, registry, reason=body.reason if body else None)
    except BatchError as e:
        raise http_error(e)
    return _payment_to_detail(payment)
