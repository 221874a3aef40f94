"""
Upload endpoints.

POST /uploads/validate   Validate recipient rows, report every error, write nothing.
POST /uploads            Create a batch of pending payments from valid rows.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.api.batches import BatchResponse, _batch_to_response
from bulkpay.database import get_session
from bulkpay.engine.batches import create_batch, list_payments
from bulkpay.engine.validation import validate_rows
from bulkpay.models.enums import Environment, PaymentMethod

router = APIRouter(prefix="/uploads", tags=["uploads"])


class RecipientRow(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    amount: Any = None
    currency: Optional[str] = "USD"
    notes: Optional[str] = None
    bank_details: Optional[dict[str, Any]] = None
    buy_currency: Optional[str] = None


class ValidateRequest(BaseModel):
    payment_method: PaymentMethod = PaymentMethod.PAYPAL
    rows: list[RecipientRow]


class UploadRequest(ValidateRequest):
    name: str
    description: Optional[str] = None
    environment: Optional[Environment] = None
    provider_config: Optional[dict[str, Any]] = None
    source_file_name: Optional[str] = None


def _rows(body: ValidateRequest) -> list[dict[str, Any]]:
    return [row.model_dump(exclude_none=True) for row in body.rows]


@router.post("/validate")
async def validate_upload(body: ValidateRequest):
    """Validation report only; nothing is written."""
    return validate_rows(_rows(body), body.payment_method.value)


@router.post("", response_model=BatchResponse, status_code=201)
async def upload_batch(body: UploadRequest, session: AsyncSession = Depends(get_session)):
    """
    Create a batch in ``uploaded`` status with one pending payment per row.

    All-or-nothing: a single invalid row rejects the upload with the report.
    """
    rows = _rows(body)
    report = validate_rows(rows, body.payment_method.value)
    if not report["is_valid"]:
        raise HTTPException(status_code=400, detail={
            "error": "Validation Failed",
            "message": f"{report['summary']['error_rows']} of {report['summary']['total_rows']} rows are invalid",
            "suggestion": "Fix the listed rows and upload again.",
            "action": "Fix upload",
            "severity": "error",
            "retryable": False,
            "details": report,
        })

    batch = await create_batch(
        session,
        name=body.name,
        payment_method=body.payment_method.value,
        rows=rows,
        description=body.description,
        environment=body.environment.value if body.environment else None,
        provider_config=body.provider_config,
        source_file_name=body.source_file_name,
    )
    payments, _ = await list_payments(session, batch.batch_id)
    return _batch_to_response(batch, payments_list=payments)
