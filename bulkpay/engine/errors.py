"""
Errors raised by the batch engine.

Provider-level failures never show up here as exceptions; gateways
return ProviderResult objects. These are the conditions the engine itself
refuses to continue from. Each carries the HTTP status the API should
answer with and an ErrorDescriptor for the response body.
"""

from typing import Any, Optional

from bulkpay.engine.status_mapper import ErrorDescriptor


class BatchError(Exception):
    """Base class for engine errors surfaced to operators."""

    status_code = 400
    title = "Request Error"
    suggestion = ""
    action = ""
    severity = "error"
    retryable = False

    def __init__(self, message: str, descriptor: Optional[ErrorDescriptor] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.descriptor = descriptor or ErrorDescriptor(
            code=type(self).__name__,
            title=self.title,
            message=message,
            suggestion=self.suggestion,
            severity=self.severity,
            retryable=self.retryable,
            action=self.action,
            details=details,
        )


class BatchNotFoundError(BatchError):
    status_code = 404
    title = "Batch Not Found"
    suggestion = "Check the batch id and try again."
    action = "Verify batch id"


class PaymentNotFoundError(BatchError):
    status_code = 404
    title = "Payment Not Found"
    suggestion = "Check the payment id and try again."
    action = "Verify payment id"


class NoPendingPaymentsError(BatchError):
    status_code = 400
    title = "Nothing To Process"
    suggestion = "Only payments in pending status are submitted. Sync the batch to refresh statuses."
    action = "Sync batch status"


class InvalidBatchStateError(BatchError):
    status_code = 400
    title = "Invalid Batch State"
    suggestion = "This operation is only allowed while the batch is in draft or uploaded status."
    action = "Review batch status"


class InvalidTransitionError(BatchError):
    status_code = 400
    title = "Invalid Status Change"
    suggestion = "Payments move forward from pending to processing to completed, failed or cancelled."
    action = "Review payment status"


class BatchLockedError(BatchError):
    status_code = 409
    title = "Batch Busy"
    suggestion = "Another process or sync run is working on this batch. Wait for it to finish."
    severity = "warning"
    retryable = True
    action = "Wait and retry"


class SubmissionFailedError(BatchError):
    """The whole submission failed; the batch and its in-flight payments were rolled back."""

    status_code = 502
    title = "Submission Failed"
    retryable = True


class ConfigurationError(BatchError):
    """Missing or invalid provider configuration. Retrying will not help until it is fixed."""

    status_code = 503
    title = "Provider Not Configured"
    suggestion = "Set the provider credentials for this environment and restart the service."
    action = "Fix configuration"


class MissingProviderConfigError(BatchError):
    status_code = 400
    title = "Provider Configuration Missing"
    suggestion = "Set the missing value in the batch's provider config and try again."
    action = "Update payment method config"


class NotSubmittedError(BatchError):
    status_code = 400
    title = "Nothing To Sync"
    suggestion = "Process the batch before syncing it with the provider."
    action = "Process batch"


class SyncFailedError(BatchError):
    """The provider status lookup failed; nothing local was changed."""

    status_code = 502
    title = "Sync Failed"
    retryable = True


class UnsupportedOperationError(BatchError):
    status_code = 400
    title = "Operation Not Supported"
    suggestion = "This operation is only available for some payment methods or statuses."
    action = "Review payment method"


class ProviderRequestError(BatchError):
    """A single provider call made on an operator's behalf failed; nothing local changed."""

    status_code = 502
    title = "Provider Request Failed"
    retryable = True
