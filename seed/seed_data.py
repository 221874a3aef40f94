"""
Seed the database with demo batches.

Creates one batch per payment method, each in ``uploaded`` status with
pending payments:
  - PayPal payouts to freelancers
  - Gift cards for an employee recognition campaign
  - XE bank transfers to overseas contractors (with bank details)

Edge cases are left to the upload validator; every row here is valid.

Run:
    python -m seed.seed_data
"""

import asyncio

from sqlalchemy import func, select

from bulkpay.database import async_session, init_db
from bulkpay.engine.batches import create_batch
from bulkpay.engine.validation import validate_rows
from bulkpay.models.batch import PaymentBatch


PAYPAL_ROWS = [
    {"name": "John Smith", "email": "john.smith@example.com", "amount": 125.00, "currency": "USD", "notes": "March design work"},
    {"name": "Sarah Johnson", "email": "sarah.j@example.com", "amount": 310.50, "currency": "USD", "notes": "Copywriting"},
    {"name": "Michael Davis", "email": "m.davis@example.com", "amount": 75.00, "currency": "USD"},
    {"name": "Emily Wilson", "email": "emily.wilson@example.com", "amount": 980.00, "currency": "USD", "notes": "QA sprint 12"},
    {"name": "Hans Mueller", "email": "hans.mueller@example.de", "amount": 450.00, "currency": "EUR"},
]

GIFTCARD_ROWS = [
    {"name": "Jessica Martinez", "email": "jessica.m@example.com", "amount": 25.00},
    {"name": "David Lee", "email": "david.lee@example.com", "amount": 50.00},
    {"name": "Amanda Taylor", "email": "amanda.t@example.com", "amount": 25.00},
    {"name": "Robert Brown", "email": "robert.brown@example.com", "amount": 100.00},
    {"name": "Liam O'Connor", "email": "liam.oconnor@example.com", "amount": 50.00},
    {"name": "Sophie Janssens", "email": "sophie.j@example.com", "amount": 25.00},
    {"name": "Marco Rossi", "email": "marco.rossi@example.com", "amount": 75.00},
]

BANKTRANSFER_ROWS = [
    {
        "name": "James Thompson",
        "email": "james.thompson@example.co.uk",
        "amount": 1_500.00,
        "currency": "GBP",
        "bank_details": {
            "accountName": "James Thompson",
            "accountNumber": "31926819",
            "ncc": "601613",
            "country": "GB",
        },
    },
    {
        "name": "Pierre Dupont",
        "email": "pierre.dupont@example.fr",
        "amount": 2_250.00,
        "currency": "EUR",
        "bank_details": {
            "accountName": "Pierre Dupont",
            "accountNumber": "FR1420041010050500013M02606",
            "iban": "FR1420041010050500013M02606",
            "bic": "PSSTFRPPLIL",
            "country": "FR",
        },
    },
    {
        "name": "Alexandre Tremblay",
        "email": "alex.tremblay@example.ca",
        "amount": 800.00,
        "currency": "CAD",
        "bank_details": {
            "accountName": "Alexandre Tremblay",
            "accountNumber": "1234567",
            "ncc": "000112345",
            "country": "CA",
        },
    },
]

BATCHES = [
    {
        "name": "Freelancer payouts - March",
        "payment_method": "paypal",
        "rows": PAYPAL_ROWS,
        "provider_config": {"email_subject": "Your March payout"},
    },
    {
        "name": "Employee recognition - Q1",
        "payment_method": "giftcard",
        "rows": GIFTCARD_ROWS,
        "provider_config": {"campaign_id": "demo-campaign", "message": "Thanks for a great quarter!"},
    },
    {
        "name": "Overseas contractors - March",
        "payment_method": "banktransfer",
        "rows": BANKTRANSFER_ROWS,
        "provider_config": {"auto_approve": False},
    },
]


async def seed():
    """Seed the database with sample batches."""
    await init_db()

    async with async_session() as session:
        existing = await session.scalar(select(func.count(PaymentBatch.batch_id)))
        if existing:
            print("Database already seeded. Skipping.")
            return

        for entry in BATCHES:
            report = validate_rows(entry["rows"], entry["payment_method"])
            if not report["is_valid"]:
                raise SystemExit(f"Seed rows for {entry['name']} are invalid: {report['errors']}")
            batch = await create_batch(
                session,
                name=entry["name"],
                payment_method=entry["payment_method"],
                rows=entry["rows"],
                provider_config=entry["provider_config"],
                source_file_name="seed",
            )
            print(f"Created {batch.batch_id}: {entry['name']} ({batch.total_payments} payments)")


if __name__ == "__main__":
    asyncio.run(seed())
