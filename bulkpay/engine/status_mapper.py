"""
Provider vocabulary → canonical statuses and user-facing error descriptors.

Two halves, both pure:

  1. Error code → descriptor (title, message, suggestion, severity,
     retryable, action). PayPal publishes machine codes in its error
     bodies; Giftogram and XE do not, so their codes are derived from the
     HTTP status or transport failure.
  2. Provider status → canonical PaymentStatus. When a provider reports
     two signals of different granularity (gift card recipient vs order,
     XE settlement vs contract) the more specific one wins and the coarse
     one is only a fallback.
"""

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from bulkpay.models.enums import PaymentMethod, PaymentStatus


@dataclass(frozen=True)
class ErrorDescriptor:
    """What an operator sees when something goes wrong."""

    code: str
    title: str
    message: str
    suggestion: str
    severity: str  # "warning" | "error"
    retryable: bool
    action: str
    details: dict[str, Any] = field(default_factory=dict)

    def user_message(self) -> str:
        return f"{self.title}: {self.message} {self.suggestion}"

    def with_details(self, **details: Any) -> "ErrorDescriptor":
        return ErrorDescriptor(**{**asdict(self), "details": {**self.details, **details}})

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.title,
            "message": self.message,
            "suggestion": self.suggestion,
            "action": self.action,
            "severity": self.severity,
            "retryable": self.retryable,
            "details": {"code": self.code, **self.details},
        }


def _d(code, title, message, suggestion, severity, retryable, action) -> ErrorDescriptor:
    return ErrorDescriptor(code, title, message, suggestion, severity, retryable, action)


UNKNOWN_ERROR = _d(
    "UNKNOWN_ERROR",
    "Payment Processing Error",
    "An unexpected error occurred while processing payments.",
    "Please try again. If the issue persists, contact support for assistance.",
    "error", True, "Retry or contact support",
)

PROCESSING_ERROR = _d(
    "PROCESSING_ERROR",
    "Processing Error",
    "An unexpected error occurred while processing the batch.",
    "All in-flight payments were marked failed. Please review the batch and try again.",
    "error", True, "Retry or contact support",
)

PAYPAL_ERRORS: dict[str, ErrorDescriptor] = {d.code: d for d in [
    _d("INSUFFICIENT_FUNDS", "Insufficient Account Balance",
       "Your PayPal business account doesn't have enough funds to complete these payouts.",
       "Please add funds to your PayPal account or reduce the payout amounts, then try again.",
       "error", True, "Add funds to PayPal account"),
    _d("NOT_AUTHORIZED", "Authorization Failed",
       "Your PayPal account is not authorized to send payouts.",
       "Please verify that Payouts is enabled for your PayPal business account.",
       "error", False, "Contact PayPal support"),
    _d("PERMISSION_DENIED", "Permission Denied",
       "The PayPal app credentials do not have permission to perform this operation.",
       "Check that the Payouts feature is enabled for your PayPal app in the developer dashboard.",
       "error", False, "Check PayPal app permissions"),
    _d("AUTHENTICATION_FAILURE", "Authentication Failed",
       "Unable to authenticate with PayPal using the configured credentials.",
       "Verify the PayPal client ID and secret for this environment.",
       "error", True, "Check API credentials"),
    _d("ACCESS_TOKEN_EXPIRED", "Session Expired",
       "The PayPal access token has expired.",
       "Please retry; a new token will be requested automatically.",
       "warning", True, "Retry"),
    _d("RATE_LIMIT_REACHED", "Too Many Requests",
       "PayPal is limiting the number of requests from this account.",
       "Please wait a few minutes before trying again.",
       "warning", True, "Wait and retry"),
    _d("INVALID_REQUEST", "Invalid Request",
       "PayPal rejected the payout request as invalid.",
       "Review the payment details (emails, amounts, currency) and try again.",
       "error", True, "Review payment data"),
    _d("VALIDATION_ERROR", "Validation Error",
       "One or more payout items failed PayPal's validation.",
       "Check recipient emails and amounts for formatting issues.",
       "error", True, "Fix payment data"),
    _d("RECEIVER_UNREGISTERED", "Recipient Not Registered",
       "The recipient does not have a PayPal account.",
       "The recipient will receive an email to claim the payout by creating an account.",
       "warning", False, "Notify recipient"),
    _d("RECEIVER_UNABLE_TO_RECEIVE", "Recipient Cannot Receive Payments",
       "The recipient's PayPal account cannot receive payments right now.",
       "Ask the recipient to check their PayPal account status.",
       "error", False, "Contact recipient"),
    _d("AMOUNT_LIMIT_EXCEEDED", "Amount Limit Exceeded",
       "The payout amount exceeds PayPal's limits for this account.",
       "Split the payout into smaller amounts or contact PayPal to raise your limits.",
       "error", True, "Reduce amount"),
    _d("MINIMUM_AMOUNT_REQUIRED", "Amount Too Small",
       "The payout amount is below PayPal's minimum.",
       "Increase the payout amount and try again.",
       "error", True, "Increase amount"),
    _d("CURRENCY_NOT_SUPPORTED", "Currency Not Supported",
       "PayPal does not support payouts in this currency for your account.",
       "Use a supported currency such as USD, EUR or GBP.",
       "error", True, "Change currency"),
    _d("ACCOUNT_LOCKED", "Account Locked",
       "Your PayPal account is locked.",
       "Contact PayPal support to unlock your account.",
       "error", False, "Contact PayPal support"),
    _d("ACCOUNT_RESTRICTED", "Account Restricted",
       "Your PayPal account has restrictions that prevent sending payouts.",
       "Log in to PayPal to resolve the account limitations.",
       "error", False, "Resolve account limitations"),
    _d("SERVICE_UNAVAILABLE", "PayPal Service Unavailable",
       "PayPal's payout service is temporarily unavailable.",
       "Please try again in a few minutes.",
       "warning", True, "Retry later"),
    _d("INTERNAL_ERROR", "PayPal Internal Error",
       "PayPal encountered an internal error while processing the request.",
       "Please try again. If the issue persists, contact PayPal support.",
       "error", True, "Retry"),
    _d("BATCH_ALREADY_PROCESSED", "Batch Already Processed",
       "This batch has already been submitted to PayPal.",
       "Check the batch status instead of submitting it again.",
       "warning", False, "Sync batch status"),
    UNKNOWN_ERROR,
]}

TRANSPORT_ERRORS: dict[str, ErrorDescriptor] = {d.code: d for d in [
    _d("UNAUTHORIZED", "Authentication Failed",
       "The provider rejected the configured credentials.",
       "Verify the API credentials for this environment.",
       "error", True, "Check API credentials"),
    _d("FORBIDDEN", "Permission Denied",
       "The provider account is not allowed to perform this operation.",
       "Check the account's permissions with the provider.",
       "error", False, "Contact provider support"),
    _d("NOT_FOUND", "Resource Not Found",
       "The provider could not find the requested resource.",
       "Check the campaign, account or reference ids in the batch configuration.",
       "error", False, "Review configuration"),
    _d("VALIDATION_ERROR", "Validation Error",
       "The provider rejected the request as invalid.",
       "Review the recipient and amount details and try again.",
       "error", True, "Fix payment data"),
    _d("RATE_LIMITED", "Too Many Requests",
       "The provider is limiting requests from this account.",
       "Please wait a few minutes before trying again.",
       "warning", True, "Wait and retry"),
    _d("SERVICE_UNAVAILABLE", "Provider Unavailable",
       "The provider is temporarily unavailable.",
       "Please try again in a few minutes.",
       "warning", True, "Retry later"),
    _d("TIMEOUT", "Provider Timeout",
       "The provider did not answer in time.",
       "The request may still complete. Sync the batch before retrying.",
       "warning", True, "Sync, then retry"),
    _d("NETWORK_ERROR", "Network Error",
       "Could not reach the provider.",
       "Check connectivity and try again.",
       "error", True, "Retry"),
    UNKNOWN_ERROR,
]}

_CODE_PATTERN = re.compile(r"[A-Z_]+")


def extract_error_code(error: Any) -> str:
    """
    Pull a machine code out of a provider error body.

    Dict bodies are checked for ``name``, ``error_code`` and ``code`` in
    that order; strings fall back to the first UPPER_SNAKE token.
    """
    if isinstance(error, dict):
        for key in ("name", "error_code", "code"):
            value = error.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(error, str):
        match = _CODE_PATTERN.search(error)
        if match:
            return match.group(0)
    return "UNKNOWN_ERROR"


def code_for_status(status_code: Optional[int]) -> str:
    """HTTP status → transport table code."""
    if status_code is None:
        return "NETWORK_ERROR"
    if status_code == 401:
        return "UNAUTHORIZED"
    if status_code == 403:
        return "FORBIDDEN"
    if status_code == 404:
        return "NOT_FOUND"
    if status_code in (400, 409, 422):
        return "VALIDATION_ERROR"
    if status_code == 429:
        return "RATE_LIMITED"
    if status_code >= 500:
        return "SERVICE_UNAVAILABLE"
    return "UNKNOWN_ERROR"


def describe_error(
    method: str,
    error_code: Optional[str] = None,
    status_code: Optional[int] = None,
    provider_message: Optional[str] = None,
    details: Any = None,
) -> ErrorDescriptor:
    """
    Build the descriptor for a failed provider call.

    Unmatched codes get the generic (still retryable) UNKNOWN_ERROR entry.
    """
    if method == PaymentMethod.PAYPAL.value:
        code = error_code or extract_error_code(details if details is not None else provider_message)
        descriptor = PAYPAL_ERRORS.get(code) or TRANSPORT_ERRORS.get(code, UNKNOWN_ERROR)
    else:
        code = error_code or code_for_status(status_code)
        descriptor = TRANSPORT_ERRORS.get(code, UNKNOWN_ERROR)

    return descriptor.with_details(provider=method, provider_message=provider_message)


def describe_result(method: str, result: Any) -> ErrorDescriptor:
    """Descriptor for a failed ProviderResult."""
    return describe_error(
        method,
        error_code=result.error_code,
        status_code=result.status_code,
        provider_message=result.error,
        details=result.details,
    )


# ── Status mapping ──────────────────────────────────────────────────────

PAYPAL_ITEM_STATUS = {
    "SUCCESS": PaymentStatus.COMPLETED,
    "FAILED": PaymentStatus.FAILED,
    "RETURNED": PaymentStatus.FAILED,
    "BLOCKED": PaymentStatus.FAILED,
    "DENIED": PaymentStatus.FAILED,
    "REFUNDED": PaymentStatus.FAILED,
    "REVERSED": PaymentStatus.FAILED,
    "PENDING": PaymentStatus.PROCESSING,
    "UNCLAIMED": PaymentStatus.PROCESSING,
    "ONHOLD": PaymentStatus.PROCESSING,
    "NEW": PaymentStatus.PROCESSING,
    "CANCELED": PaymentStatus.CANCELLED,
}

GIFTCARD_RECIPIENT_STATUS = {
    "sent": PaymentStatus.COMPLETED,
    "delivered": PaymentStatus.COMPLETED,
    "pending": PaymentStatus.PROCESSING,
    "failed": PaymentStatus.FAILED,
}

GIFTCARD_ORDER_STATUS = {
    "delivered": PaymentStatus.COMPLETED,
    "sent": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.FAILED,
    "processing": PaymentStatus.PROCESSING,
    "pending": PaymentStatus.PROCESSING,
}

BANK_SETTLEMENT_STATUS = {
    "settled": PaymentStatus.COMPLETED,
}

BANK_CONTRACT_STATUS = {
    "cancelled": PaymentStatus.CANCELLED,
    "failed": PaymentStatus.FAILED,
    "rejected": PaymentStatus.FAILED,
}


def map_paypal_status(transaction_status: Optional[str]) -> PaymentStatus:
    """PayPal payout item status. Missing or unknown statuses stay in flight."""
    if not transaction_status:
        return PaymentStatus.PROCESSING
    return PAYPAL_ITEM_STATUS.get(transaction_status.upper(), PaymentStatus.PROCESSING)


def map_giftcard_status(
    recipient_status: Optional[str],
    order_status: Optional[str] = None,
) -> Optional[PaymentStatus]:
    """
    Gift card order status. The recipient-level status wins; the order
    status is only consulted when the recipient status is absent or
    unrecognised. Returns None when neither signal is known.
    """
    if recipient_status:
        mapped = GIFTCARD_RECIPIENT_STATUS.get(recipient_status.lower())
        if mapped is not None:
            return mapped
    if order_status:
        return GIFTCARD_ORDER_STATUS.get(order_status.lower())
    return None


def map_bank_transfer_status(
    settlement_status: Optional[str],
    contract_status: Optional[str] = None,
) -> PaymentStatus:
    """XE contract status. Settlement is the finer signal and takes precedence."""
    if settlement_status:
        mapped = BANK_SETTLEMENT_STATUS.get(settlement_status.lower())
        if mapped is not None:
            return mapped
    if contract_status:
        return BANK_CONTRACT_STATUS.get(contract_status.lower(), PaymentStatus.PROCESSING)
    return PaymentStatus.PROCESSING
