"""
Upload row validation with per-row error reporting.

Before a batch is created, every recipient row is checked:
  1. Name has at least 2 characters
  2. Email looks like an address
  3. Amount is positive and within the per-payment limit
  4. Currency is supported
  5. Bank transfer rows carry bank details with an account number and country

Every failing rule on a row is reported, not just the first, so an
operator can fix a spreadsheet in one pass.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from bulkpay.config import settings
from bulkpay.models.enums import PaymentMethod

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class RowValidationResult:
    """Result of validating one upload row. ``row`` is 1-based."""

    row: int
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.errors


def _amount(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def validate_row(
    row: int,
    data: dict[str, Any],
    payment_method: str,
    max_amount: Optional[float] = None,
    currencies: Optional[list[str]] = None,
) -> RowValidationResult:
    """
    Check one recipient row.

    Args:
        row: 1-based row number, echoed back in the report.
        data: The row as submitted (name, email, amount, currency, ...).
        payment_method: The batch's payment method.
        max_amount: Per-payment ceiling; defaults to settings.
        currencies: Accepted currency codes; defaults to settings.
    """
    max_amount = max_amount if max_amount is not None else settings.max_payment_amount
    currencies = currencies or settings.supported_currencies
    result = RowValidationResult(row=row, data=data)

    name = str(data.get("name") or "").strip()
    if len(name) < 2:
        result.errors.append("Name must be at least 2 characters")

    email = str(data.get("email") or "").strip()
    if not EMAIL_PATTERN.match(email):
        result.errors.append(f"Invalid email address: {email or '(empty)'}")

    amount = _amount(data.get("amount"))
    if amount is None or amount <= 0:
        result.errors.append(f"Amount must be a positive number: {data.get('amount')}")
    elif amount > max_amount:
        result.errors.append(f"Amount {amount:.2f} exceeds the maximum of {max_amount:.2f}")

    currency = str(data.get("currency") or "USD").strip().upper()
    if currency not in currencies:
        result.errors.append(f"Unsupported currency: {currency}")

    if payment_method == PaymentMethod.BANKTRANSFER.value:
        bank_details = data.get("bank_details")
        if not isinstance(bank_details, dict):
            result.errors.append("Bank details are required for bank transfers")
        else:
            if not bank_details.get("accountNumber"):
                result.errors.append("Bank account number is required")
            if not bank_details.get("country"):
                result.errors.append("Bank country is required")

    return result


def validate_rows(rows: list[dict[str, Any]], payment_method: str) -> dict[str, Any]:
    """
    Validate all rows and build the upload report.

    Returns:
        ``{summary{total_rows, valid_rows, error_rows, total_amount, currencies},
        errors[{row, errors, data}], is_valid}``. ``total_amount`` covers valid rows only.
    """
    results = [validate_row(i, data, payment_method) for i, data in enumerate(rows, start=1)]
    valid = [r for r in results if r.valid]
    invalid = [r for r in results if not r.valid]

    total_amount = sum(_amount(r.data.get("amount")) or 0.0 for r in valid)
    currencies = sorted({str(r.data.get("currency") or "USD").strip().upper() for r in valid})

    return {
        "summary": {
            "total_rows": len(results),
            "valid_rows": len(valid),
            "error_rows": len(invalid),
            "total_amount": round(total_amount, 2),
            "currencies": currencies,
        },
        "errors": [{"row": r.row, "errors": r.errors, "data": r.data} for r in invalid],
        "is_valid": bool(results) and not invalid,
    }
