"""Tests for upload row validation."""

from bulkpay.engine.validation import validate_row, validate_rows


def _row(**overrides):
    row = {"name": "Ada Lovelace", "email": "ada@example.com", "amount": 25.0, "currency": "USD"}
    row.update(overrides)
    return row


class TestValidateRow:
    def test_valid_row(self):
        result = validate_row(1, _row(), "paypal")
        assert result.valid
        assert result.errors == []

    def test_every_failing_rule_is_reported(self):
        result = validate_row(3, _row(name="A", email="not-an-email", amount=-5), "paypal")
        assert result.row == 3
        assert len(result.errors) == 3
        assert any("Name" in e for e in result.errors)
        assert any("not-an-email" in e for e in result.errors)
        assert any("positive" in e for e in result.errors)

    def test_amount_must_be_numeric(self):
        result = validate_row(1, _row(amount="ten"), "paypal")
        assert not result.valid

    def test_amount_ceiling(self):
        assert not validate_row(1, _row(amount=501), "paypal", max_amount=500).valid
        assert validate_row(1, _row(amount=500), "paypal", max_amount=500).valid

    def test_unsupported_currency(self):
        result = validate_row(1, _row(currency="xyz"), "paypal", currencies=["USD"])
        assert result.errors == ["Unsupported currency: XYZ"]

    def test_currency_defaults_to_usd(self):
        assert validate_row(1, _row(currency=None), "paypal", currencies=["USD"]).valid

    def test_bank_transfer_needs_bank_details(self):
        assert not validate_row(1, _row(), "banktransfer").valid

        result = validate_row(1, _row(bank_details={"accountName": "Ada"}), "banktransfer")
        assert result.errors == ["Bank account number is required", "Bank country is required"]

        ok = validate_row(1, _row(bank_details={"accountNumber": "123", "country": "GB"}), "banktransfer")
        assert ok.valid


class TestValidateRows:
    def test_report_counts_valid_rows_only(self):
        report = validate_rows([_row(amount=10), _row(email="bad"), _row(amount=15.5, currency="EUR")], "paypal")

        assert report["is_valid"] is False
        assert report["summary"] == {
            "total_rows": 3,
            "valid_rows": 2,
            "error_rows": 1,
            "total_amount": 25.5,
            "currencies": ["EUR", "USD"],
        }
        assert report["errors"][0]["row"] == 2
        assert report["errors"][0]["data"]["email"] == "bad"

    def test_all_valid(self):
        report = validate_rows([_row(), _row(email="b@example.com")], "giftcard")
        assert report["is_valid"] is True
        assert report["errors"] == []

    def test_empty_upload_is_not_valid(self):
        report = validate_rows([], "paypal")
        assert report["is_valid"] is False
        assert report["summary"]["total_rows"] == 0
