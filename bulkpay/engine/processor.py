"""
Batch processor: the core execution engine.

Drives one batch's pending payments through its provider:

  1. Load the batch (404 if absent) and its pending payments for the
     batch's payment method (400 if there are none)
  2. Take the processing lease
  3. Mark the batch processing and every selected payment processing, in
     one commit, before any provider call
  4. Submit: one PayPal payout batch, windowed gift card orders, or one
     recipient + contract per bank transfer
  5. Walk the per-item results in request order, matched to payments by
     position, and apply the mapped status
  6. Recompute the batch aggregate; zero accepted items and at least one
     failure overrides the batch to failed with the first item error

A total submission failure, any unexpected exception during 4-6, or
cancellation of the run (server shutdown) rolls back step 3: batch →
failed, every payment still processing → failed, both with the same
message. Long runs renew the processing lease as they go.

Two modes share the state machine: ``process_batch`` returns a summary,
``stream_batch`` yields a progress event after every item.
"""

import asyncio
import functools
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bulkpay.audit.logger import log_event
from bulkpay.config import settings
from bulkpay.engine.aggregate import recompute_batch
from bulkpay.engine.errors import (
    BatchError,
    BatchNotFoundError,
    MissingProviderConfigError,
    NoPendingPaymentsError,
    SubmissionFailedError,
)
from bulkpay.engine.lease import acquire_lease, release_lease, renew_lease
from bulkpay.engine.status_mapper import (
    PROCESSING_ERROR,
    ErrorDescriptor,
    describe_error,
    describe_result,
    extract_error_code,
    map_bank_transfer_status,
    map_giftcard_status,
    map_paypal_status,
)
from bulkpay.engine.transitions import apply_status
from bulkpay.models.batch import Payment, PaymentBatch
from bulkpay.models.enums import BatchStatus, PaymentMethod, PaymentStatus
from bulkpay.providers.banktransfer import BankTransferGateway, build_recipient_payload, client_reference
from bulkpay.providers.base import ProviderGateway, ProviderResult
from bulkpay.providers.giftcard import GiftCardGateway, GiftCardOrder
from bulkpay.providers.paypal import PayoutItem, PayPalGateway
from bulkpay.providers.registry import GatewayRegistry

logger = logging.getLogger("bulkpay.processor")

ITEMS_PENDING_NOTE = "Item details will be available after processing. Sync the batch to refresh statuses."
ALL_FAILED_MESSAGE = "All payments in this batch failed"


@dataclass
class ItemResult:
    """Canonical outcome of one payment's submission."""

    status: PaymentStatus
    fields: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == PaymentStatus.FAILED


@dataclass
class BatchRun:
    """In-memory state of one processing run."""

    batch: PaymentBatch
    payments: list[Payment]
    gateway: ProviderGateway
    config: dict[str, Any]
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    note: Optional[str] = None
    lease_token: Optional[str] = None
    renew_after: float = 0.0
    keep_alive: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def total(self) -> int:
        return len(self.payments)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0


@dataclass
class ProcessOutcome:
    batch: PaymentBatch
    total: int
    processed: int
    successful: int
    failed: int
    has_failures: bool
    errors: list[dict[str, Any]]
    note: Optional[str] = None


def load_config(batch: PaymentBatch, overrides: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    stored: dict[str, Any] = {}
    if batch.provider_config:
        try:
            stored = json.loads(batch.provider_config)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Batch %s has an unreadable provider config; ignoring it", batch.batch_id)
    return {**stored, **{k: v for k, v in (overrides or {}).items() if v is not None}}


def _pending_filter(batch: PaymentBatch):
    return (
        Payment.batch_id == batch.batch_id,
        Payment.status == PaymentStatus.PENDING.value,
        Payment.payment_method == batch.payment_method,
    )


# ── Setup and teardown ──────────────────────────────────────────────────


async def _begin(
    session: AsyncSession,
    batch_id: str,
    registry: GatewayRegistry,
    provider_config: Optional[dict[str, Any]],
) -> BatchRun:
    batch = await session.get(PaymentBatch, batch_id)
    if batch is None:
        raise BatchNotFoundError(f"Batch not found: {batch_id}", batch_id=batch_id)

    pending = await session.scalar(select(func.count(Payment.id)).where(*_pending_filter(batch)))
    if not pending:
        raise NoPendingPaymentsError("No pending payments found in this batch", batch_id=batch_id)

    config = load_config(batch, provider_config)
    if batch.payment_method == PaymentMethod.GIFTCARD.value and not config.get("campaign_id"):
        raise MissingProviderConfigError("A gift card campaign_id is required", batch_id=batch_id)

    # configuration problems surface before anything is written
    gateway = registry.get(batch.payment_method, batch.environment)

    lease_token = await acquire_lease(session, batch_id)

    result = await session.execute(
        select(Payment).where(*_pending_filter(batch)).order_by(Payment.created_at, Payment.id)
    )
    payments = list(result.scalars().all())
    if not payments:
        # another run drained the batch between the check and the lease
        release_lease(batch)
        await session.commit()
        raise NoPendingPaymentsError("No pending payments found in this batch", batch_id=batch_id)

    batch.status = BatchStatus.PROCESSING.value
    batch.processed_at = datetime.now(timezone.utc)
    batch.error_message = None
    if provider_config:
        batch.provider_config = json.dumps(config)
    for payment in payments:
        apply_status(payment, PaymentStatus.PROCESSING)

    await log_event(session, "batch_processing_started", batch_id=batch_id, details={
        "payment_method": batch.payment_method,
        "environment": batch.environment,
        "payments": len(payments),
    })
    await session.commit()

    logger.info(
        "Batch %s: processing %d %s payments (%s)",
        batch_id,
        len(payments),
        batch.payment_method,
        batch.environment,
    )
    run = BatchRun(
        batch=batch,
        payments=payments,
        gateway=gateway,
        config=config,
        lease_token=lease_token,
        renew_after=time.monotonic() + settings.processing_lease_renew_seconds,
    )
    run.keep_alive = functools.partial(_keep_lease, session, run)
    return run


async def _keep_lease(session: AsyncSession, run: BatchRun) -> None:
    """Renew the lease once the renewal interval has passed; commits what is pending."""
    if run.lease_token is None or time.monotonic() < run.renew_after:
        return
    await renew_lease(session, run.batch.batch_id, run.lease_token)
    run.renew_after = time.monotonic() + settings.processing_lease_renew_seconds


async def _record(session: AsyncSession, run: BatchRun, payment: Payment, item: ItemResult) -> None:
    apply_status(
        payment,
        item.status,
        error_message=item.error_message,
        error_code=item.error_code,
        **item.fields,
    )
    run.processed += 1
    if item.failed:
        run.failed += 1
        run.errors.append({
            "payment_id": payment.id,
            "email": payment.recipient_email,
            "error": item.error_message,
        })
    else:
        run.successful += 1

    await log_event(
        session,
        "payment_failed" if item.failed else "payment_submitted",
        batch_id=run.batch.batch_id,
        payment_id=payment.id,
        details={"status": item.status.value, "error": item.error_message, **item.fields},
    )


async def _finish(session: AsyncSession, run: BatchRun) -> ProcessOutcome:
    batch = run.batch
    if run.processed < run.total:
        logger.warning(
            "Batch %s: provider returned %d results for %d payments; %d left processing",
            batch.batch_id,
            run.processed,
            run.total,
            run.total - run.processed,
        )

    await recompute_batch(session, batch)

    if run.successful == 0 and run.failed > 0 and run.processed == run.total:
        first_error = next((e["error"] for e in run.errors if e.get("error")), None)
        batch.status = BatchStatus.FAILED.value
        batch.error_message = first_error or ALL_FAILED_MESSAGE

    release_lease(batch)
    await log_event(session, "batch_processed", batch_id=batch.batch_id, details={
        "status": batch.status,
        "processed": run.processed,
        "successful": run.successful,
        "failed": run.failed,
        "note": run.note,
    })
    await session.commit()

    logger.info(
        "Batch %s summary: status=%s processed=%d/%d successful=%d failed=%d",
        batch.batch_id,
        batch.status,
        run.processed,
        run.total,
        run.successful,
        run.failed,
    )
    return ProcessOutcome(
        batch=batch,
        total=run.total,
        processed=run.processed,
        successful=run.successful,
        failed=run.failed,
        has_failures=run.has_failures,
        errors=run.errors,
        note=run.note,
    )


async def _rollback(session: AsyncSession, run: BatchRun, exc: BaseException) -> ErrorDescriptor:
    """Undo the optimistic processing transition. Batch first, then payments."""
    batch_id = run.batch.batch_id
    if isinstance(exc, BatchError):
        descriptor = exc.descriptor
        logger.error("Batch %s: submission failed: %s", batch_id, exc)
    elif isinstance(exc, asyncio.CancelledError):
        descriptor = PROCESSING_ERROR.with_details(error="Processing was interrupted before it finished")
        logger.warning("Batch %s: run cancelled, rolling back in-flight payments", batch_id)
    else:
        descriptor = PROCESSING_ERROR.with_details(error=str(exc))
        logger.exception("Batch %s: unexpected error during processing", batch_id)

    if isinstance(exc, SQLAlchemyError):
        await session.rollback()

    message = descriptor.user_message()
    await log_event(session, "batch_submission_failed", batch_id=batch_id, details={
        "error": message,
        "processed": run.processed,
        "retryable": descriptor.retryable,
    })
    await session.execute(
        update(PaymentBatch)
        .where(PaymentBatch.batch_id == batch_id)
        .values(
            status=BatchStatus.FAILED.value,
            error_message=message,
            lease_token=None,
            lease_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    reverted = await session.execute(
        update(Payment)
        .where(Payment.batch_id == batch_id, Payment.status == PaymentStatus.PROCESSING.value)
        .values(
            status=PaymentStatus.FAILED.value,
            error_message=message,
            error_code=descriptor.code,
            completed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await log_event(session, "batch_rolled_back", batch_id=batch_id, details={
        "error": descriptor.title,
        "code": descriptor.code,
        "payments_reverted": reverted.rowcount,
    })
    await session.commit()

    # bring the identity map back in line with the bulk updates
    await session.refresh(run.batch)
    await session.execute(
        select(Payment).where(Payment.batch_id == batch_id).execution_options(populate_existing=True)
    )
    await recompute_batch(session, run.batch)
    # the rollback status wins over the derived one
    run.batch.status = BatchStatus.FAILED.value
    await session.commit()
    return descriptor


# ── Provider submissions ───────────────────────────────────────────────
#
# Each submitter yields (payment, ItemResult) in request order. Results
# are matched to payments by position: at submit time the local payment
# has no provider id to match on yet.


def _failed_item(method: str, result: ProviderResult, **fields: Any) -> ItemResult:
    descriptor = describe_result(method, result)
    return ItemResult(
        status=PaymentStatus.FAILED,
        fields=fields,
        error_message=result.error or descriptor.user_message(),
        error_code=descriptor.code,
    )


def _total_failure(method: str, result: ProviderResult) -> SubmissionFailedError:
    descriptor = describe_result(method, result)
    return SubmissionFailedError(descriptor.user_message(), descriptor=descriptor)


def paypal_item_result(item: dict[str, Any], payout_batch_id: Optional[str]) -> ItemResult:
    transaction_status = item.get("transaction_status")
    status = map_paypal_status(transaction_status)
    fields = {
        "provider_batch_id": payout_batch_id,
        "provider_item_id": item.get("payout_item_id"),
        "provider_transaction_id": item.get("transaction_id"),
        "provider_status": transaction_status,
    }
    if status != PaymentStatus.FAILED:
        return ItemResult(status=status, fields=fields)

    errors = item.get("errors") if isinstance(item.get("errors"), dict) else {}
    if errors:
        descriptor = describe_error(
            PaymentMethod.PAYPAL.value,
            error_code=extract_error_code(errors),
            provider_message=errors.get("message"),
        )
        return ItemResult(status, fields, descriptor.user_message(), descriptor.code)
    return ItemResult(status, fields, f"PayPal reported the payout item as {transaction_status}", transaction_status)


async def _submit_paypal(run: BatchRun, one_at_a_time: bool) -> AsyncIterator[tuple[Payment, ItemResult]]:
    # PayPal takes the whole batch in one call even when streaming;
    # streaming then reports the items one by one.
    gateway: PayPalGateway = run.gateway  # type: ignore[assignment]
    batch = run.batch
    items = [
        PayoutItem(
            reference=p.id,
            email=p.recipient_email,
            amount=p.amount,
            currency=p.currency or batch.currency or "USD",
            note=p.notes,
        )
        for p in run.payments
    ]
    result = await gateway.submit_batch(
        batch.batch_id,
        items,
        email_subject=run.config.get("email_subject"),
        email_message=run.config.get("email_message"),
    )
    if not result.success:
        raise _total_failure(PaymentMethod.PAYPAL.value, result)

    body = result.data if isinstance(result.data, dict) else {}
    header = body.get("batch_header")
    if not isinstance(header, dict):
        raise ValueError("Invalid PayPal response: missing batch_header")

    batch.provider_batch_id = header.get("payout_batch_id")
    batch.provider_batch_status = header.get("batch_status")

    items_out = body.get("items")
    if not isinstance(items_out, list) or not items_out:
        run.note = ITEMS_PENDING_NOTE
        logger.info("Batch %s: PayPal accepted payout batch %s without item details",
                    batch.batch_id, batch.provider_batch_id)
        return

    if len(items_out) != len(run.payments):
        logger.warning(
            "Batch %s: PayPal returned %d items for %d payments",
            batch.batch_id,
            len(items_out),
            len(run.payments),
        )

    for payment, item in zip(run.payments, items_out):
        yield payment, paypal_item_result(item if isinstance(item, dict) else {}, batch.provider_batch_id)


def giftcard_item_result(result: ProviderResult) -> ItemResult:
    if not result.success:
        return _failed_item(PaymentMethod.GIFTCARD.value, result)

    order = result.data
    status = map_giftcard_status(order.recipient_status, order.order_status) or PaymentStatus.PROCESSING
    fields = {
        "provider_item_id": order.order_id,
        "provider_transaction_id": order.external_id,
        "provider_status": order.recipient_status or order.order_status,
    }
    if status == PaymentStatus.FAILED:
        return ItemResult(status, fields, "Gift card delivery failed", "DELIVERY_FAILED")
    return ItemResult(status=status, fields=fields)


async def _submit_giftcard(run: BatchRun, one_at_a_time: bool) -> AsyncIterator[tuple[Payment, ItemResult]]:
    gateway: GiftCardGateway = run.gateway  # type: ignore[assignment]
    orders = [
        GiftCardOrder(
            email=p.recipient_email,
            amount=p.amount,
            campaign_id=run.config.get("campaign_id"),
            name=p.recipient_name,
            message=run.config.get("message"),
            subject=run.config.get("subject"),
            notes=p.notes or f"Gift card for {p.recipient_name}",
            reference=p.id,
        )
        for p in run.payments
    ]

    if one_at_a_time:
        for payment, order in zip(run.payments, orders):
            yield payment, giftcard_item_result(await gateway.submit_one(order))
        return

    bulk = await gateway.submit_bulk(
        orders,
        batch_size=run.config.get("batch_size"),
        delay_ms=run.config.get("delay_ms"),
        on_window=run.keep_alive,
    )
    if not bulk.success:
        raise _total_failure(PaymentMethod.GIFTCARD.value, bulk)
    for payment, (_order, result) in zip(run.payments, bulk.data.results):
        yield payment, giftcard_item_result(result)


async def submit_bank_transfer(
    gateway: BankTransferGateway,
    payment: Payment,
    config: dict[str, Any],
) -> ItemResult:
    """Register the recipient (once), create the contract, optionally approve it."""
    method = PaymentMethod.BANKTRANSFER.value
    details = json.loads(payment.provider_details) if payment.provider_details else {}
    bank_details = details.get("bank_details") or {}
    buy_currency = (details.get("buy_currency") or config.get("buy_currency") or payment.currency or "USD").upper()

    recipient_id = payment.provider_recipient_id
    recipient_reference = None
    if not recipient_id:
        recipient_reference = client_reference("RCP")
        created = await gateway.create_recipient(
            build_recipient_payload(
                payment.recipient_name,
                payment.recipient_email,
                bank_details,
                buy_currency,
                reference=recipient_reference,
            )
        )
        if not created.success:
            return _failed_item(method, created)
        recipient_id = created.data

    contract_result = await gateway.create_contract(
        recipient_id,
        payment.amount,
        buy_currency,
        reference=client_reference("PAY"),
        recipient_reference=recipient_reference,
        purpose_code=config.get("purpose_code"),
    )
    if not contract_result.success:
        return _failed_item(method, contract_result, provider_recipient_id=recipient_id)

    contract = contract_result.data
    error_message = None
    if config.get("auto_approve"):
        approved = await gateway.approve(contract.contract_number)
        if approved.success:
            contract.status = approved.data.status or contract.status
            contract.settlement_status = approved.data.settlement_status or contract.settlement_status
        else:
            # the contract exists; it can still be approved by an operator
            error_message = f"Contract created but approval failed: {approved.error}"

    status = map_bank_transfer_status(contract.settlement_status, contract.status)
    fields = {
        "provider_recipient_id": recipient_id,
        "provider_item_id": contract.contract_number,
        "provider_status": contract.settlement_status or contract.status,
    }
    if status == PaymentStatus.FAILED:
        return ItemResult(status, fields, f"Contract {contract.contract_number} was {contract.status}", contract.status)
    return ItemResult(status=status, fields=fields, error_message=error_message)


async def _submit_bank_transfer(run: BatchRun, one_at_a_time: bool) -> AsyncIterator[tuple[Payment, ItemResult]]:
    # no batch primitive at XE: always one payment at a time
    for payment in run.payments:
        yield payment, await submit_bank_transfer(run.gateway, payment, run.config)  # type: ignore[arg-type]


SUBMITTERS: dict[str, Callable[[BatchRun, bool], AsyncIterator[tuple[Payment, ItemResult]]]] = {
    PaymentMethod.PAYPAL.value: _submit_paypal,
    PaymentMethod.GIFTCARD.value: _submit_giftcard,
    PaymentMethod.BANKTRANSFER.value: _submit_bank_transfer,
}


# ── Entry points ─────────────────────────────────────────────────────────


async def process_batch(
    session: AsyncSession,
    batch_id: str,
    registry: GatewayRegistry,
    provider_config: Optional[dict[str, Any]] = None,
) -> ProcessOutcome:
    """
    Process every pending payment of a batch and return the summary.

    A mixed result is not an error: the batch ends ``partial`` and the
    outcome carries ``has_failures`` with the per-item errors.

    Raises:
        BatchNotFoundError, NoPendingPaymentsError, MissingProviderConfigError,
        ConfigurationError, BatchLockedError: Nothing was written.
        SubmissionFailedError: The batch and its in-flight payments were rolled back to failed.
    """
    run = await _begin(session, batch_id, registry, provider_config)
    try:
        async for payment, item in SUBMITTERS[run.batch.payment_method](run, False):
            await _record(session, run, payment, item)
            await _keep_lease(session, run)
        return await _finish(session, run)
    except asyncio.CancelledError as e:
        # shutdown or a cancelled task must not leave payments in processing
        await asyncio.shield(_rollback(session, run, e))
        raise
    except Exception as e:
        descriptor = await _rollback(session, run, e)
        if isinstance(e, SubmissionFailedError):
            raise
        raise SubmissionFailedError(descriptor.user_message(), descriptor=descriptor) from e


def _progress_event(run: BatchRun, payment: Payment, item: ItemResult) -> dict[str, Any]:
    return {
        "processed": run.processed,
        "total": run.total,
        "success": not item.failed,
        "payment_id": payment.id,
        "email": payment.recipient_email,
        "status": item.status.value,
        "error_message": item.error_message,
    }


async def stream_batch(
    session: AsyncSession,
    batch_id: str,
    registry: GatewayRegistry,
    provider_config: Optional[dict[str, Any]] = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Same state machine as ``process_batch``, one payment at a time.

    Yields a ``started`` event, one progress event per payment and a final
    ``done`` event. Errors that prevent the run from starting are raised
    before the first event; failures after that end the stream with a
    ``done`` event carrying the error descriptor.
    """
    run = await _begin(session, batch_id, registry, provider_config)
    yield {"started": True, "batch_id": batch_id, "total": run.total}

    try:
        async for payment, item in SUBMITTERS[run.batch.payment_method](run, True):
            await _record(session, run, payment, item)
            await session.commit()
            await _keep_lease(session, run)
            yield _progress_event(run, payment, item)
        outcome = await _finish(session, run)
    except asyncio.CancelledError as e:
        await asyncio.shield(_rollback(session, run, e))
        raise
    except Exception as e:
        descriptor = await _rollback(session, run, e)
        yield {
            "done": True,
            "processed": run.processed,
            "total": run.total,
            "successful": run.successful,
            "failed": run.failed,
            "has_failures": True,
            "batch_status": run.batch.status,
            **descriptor.to_dict(),
        }
        return

    yield {
        "done": True,
        "processed": outcome.processed,
        "total": outcome.total,
        "successful": outcome.successful,
        "failed": outcome.failed,
        "has_failures": outcome.has_failures,
        "batch_status": outcome.batch.status,
        "note": outcome.note,
    }


_background_runs: set[asyncio.Task] = set()


def start_background_stream(
    session_factory: Callable[[], AsyncSession],
    batch_id: str,
    registry: GatewayRegistry,
    provider_config: Optional[dict[str, Any]] = None,
) -> asyncio.Queue:
    """
    Run ``stream_batch`` in its own task and session, feeding a queue.

    The queue receives event dicts, a BatchError if the run could not
    start, and finally None. The task does not depend on anyone reading
    the queue: a client that disconnects only stops the reader.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def _run() -> None:
        try:
            async with session_factory() as session:
                async for event in stream_batch(session, batch_id, registry, provider_config):
                    await queue.put(event)
        except BatchError as e:
            await queue.put(e)
        except Exception as e:
            logger.exception("Batch %s: streaming run crashed", batch_id)
            await queue.put(SubmissionFailedError(str(e), descriptor=PROCESSING_ERROR.with_details(error=str(e))))
        finally:
            await queue.put(None)

    task = asyncio.create_task(_run(), name=f"stream-{batch_id}")
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)
    return queue
