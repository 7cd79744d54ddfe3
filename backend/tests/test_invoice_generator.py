"""
Invoice generator: billing period math and idempotent creation.
- One invoice per (subscription_id, period_start)
- Existing invoice -> Skipped, no insert
- DuplicateKeyError from a concurrent run -> Skipped
- Other storage errors propagate
"""
import sys
from datetime import date, datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pymongo.errors import DuplicateKeyError

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from services.invoice_generator import (
    SKIP_ALREADY_EXISTS,
    SKIP_CONCURRENT_INSERT,
    SKIP_ZERO_AMOUNT,
    add_months,
    build_description,
    compute_billing_period,
    invoice_generator,
    period_bounds_as_datetimes,
)


def _ensure_kwargs(**overrides):
    kwargs = dict(
        subscription_id="sub-1",
        condominium_id="condo-1",
        period_start=date(2025, 3, 10),
        period_end=date(2025, 4, 10),
        due_date=date(2025, 3, 25),
        amount=49.90,
        description="Assinatura Essencial - 10/03/2025 a 10/04/2025",
    )
    kwargs.update(overrides)
    return kwargs


def test_compute_billing_period():
    period = compute_billing_period(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))
    assert period.as_strings() == {
        "period_start": "2025-03-10",
        "period_end": "2025-04-10",
        "due_date": "2025-03-25",
    }


def test_billing_period_uses_utc_day():
    period = compute_billing_period(datetime(2025, 3, 10, 23, 30, tzinfo=timezone.utc))
    assert period.start == date(2025, 3, 10)


def test_add_months_clamps_to_month_end():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 12, 15), 1) == date(2026, 1, 15)


def test_period_bounds_are_utc_midnights():
    bounds = period_bounds_as_datetimes(compute_billing_period(datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)))
    assert bounds["current_period_start"] == datetime(2025, 3, 10, tzinfo=timezone.utc)
    assert bounds["current_period_end"] == datetime(2025, 4, 10, tzinfo=timezone.utc)


def test_build_description():
    period = compute_billing_period(datetime(2025, 3, 10, tzinfo=timezone.utc))
    assert build_description("essencial", period) == "Assinatura Essencial - 10/03/2025 a 10/04/2025"


@pytest.mark.asyncio
async def test_creates_invoice_when_none_exists():
    db = MagicMock()
    db.invoices.find_one = AsyncMock(return_value=None)
    db.invoices.insert_one = AsyncMock()

    with patch("services.invoice_generator.database.get_db", return_value=db):
        with patch("services.invoice_generator.create_audit_log", new_callable=AsyncMock) as audit:
            outcome = await invoice_generator.ensure_invoice(**_ensure_kwargs())

    assert outcome.created is True
    doc = db.invoices.insert_one.await_args.args[0]
    assert doc["subscription_id"] == "sub-1"
    assert doc["period_start"] == "2025-03-10"
    assert doc["period_end"] == "2025-04-10"
    assert doc["due_date"] == "2025-03-25"
    assert doc["amount"] == 49.90
    assert doc["status"] == "pending"
    assert outcome.invoice["id"] == doc["id"]
    audit.assert_awaited_once()
    assert audit.call_args.kwargs["action"].value == "INVOICE_CREATED"


@pytest.mark.asyncio
async def test_existing_invoice_is_skipped_without_insert():
    existing = {"id": "inv-1", "subscription_id": "sub-1", "period_start": "2025-03-10"}
    db = MagicMock()
    db.invoices.find_one = AsyncMock(return_value=existing)
    db.invoices.insert_one = AsyncMock()

    with patch("services.invoice_generator.database.get_db", return_value=db):
        outcome = await invoice_generator.ensure_invoice(**_ensure_kwargs())

    assert outcome.created is False
    assert outcome.skipped is True
    assert outcome.skipped_reason == SKIP_ALREADY_EXISTS
    assert outcome.invoice == existing
    db.invoices.insert_one.assert_not_awaited()
    query = db.invoices.find_one.await_args.args[0]
    assert query == {"subscription_id": "sub-1", "period_start": "2025-03-10"}


@pytest.mark.asyncio
async def test_duplicate_key_from_concurrent_run_is_skipped():
    db = MagicMock()
    db.invoices.find_one = AsyncMock(side_effect=[None, {"id": "inv-other"}])
    db.invoices.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))

    with patch("services.invoice_generator.database.get_db", return_value=db):
        with patch("services.invoice_generator.create_audit_log", new_callable=AsyncMock) as audit:
            outcome = await invoice_generator.ensure_invoice(**_ensure_kwargs())

    assert outcome.created is False
    assert outcome.skipped_reason == SKIP_CONCURRENT_INSERT
    assert outcome.invoice == {"id": "inv-other"}
    audit.assert_not_awaited()


@pytest.mark.asyncio
async def test_storage_error_propagates():
    db = MagicMock()
    db.invoices.find_one = AsyncMock(return_value=None)
    db.invoices.insert_one = AsyncMock(side_effect=RuntimeError("write concern failed"))

    with patch("services.invoice_generator.database.get_db", return_value=db):
        with pytest.raises(RuntimeError):
            await invoice_generator.ensure_invoice(**_ensure_kwargs())


@pytest.mark.asyncio
async def test_zero_amount_is_skipped():
    db = MagicMock()
    db.invoices.find_one = AsyncMock()
    with patch("services.invoice_generator.database.get_db", return_value=db):
        outcome = await invoice_generator.ensure_invoice(**_ensure_kwargs(amount=0))
    assert outcome.skipped_reason == SKIP_ZERO_AMOUNT
    db.invoices.find_one.assert_not_awaited()


@pytest.mark.asyncio
async def test_datetime_period_start_is_keyed_by_date_string():
    db = MagicMock()
    db.invoices.find_one = AsyncMock(return_value={"id": "inv-1"})
    with patch("services.invoice_generator.database.get_db", return_value=db):
        await invoice_generator.find_invoice("sub-1", datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc))
    assert db.invoices.find_one.await_args.args[0]["period_start"] == "2025-03-10"
