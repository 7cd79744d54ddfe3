"""
Invoice Generator - billing period math and idempotent invoice creation.

Idempotency key: (subscription_id, period_start). The existence check is the
fast path; the unique index on invoices is what makes it safe when two
billing runs overlap. A DuplicateKeyError on insert is the same outcome as
finding the invoice up front: Skipped.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, Invoice, InvoiceStatus
from services.plan_registry import plan_registry
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

DUE_DAYS = 15

SKIP_ALREADY_EXISTS = "already_exists"
SKIP_CONCURRENT_INSERT = "concurrent_insert"
SKIP_ZERO_AMOUNT = "zero_amount"

DateLike = Union[date, datetime, str]


@dataclass
class BillingPeriod:
    start: date
    end: date
    due: date

    def as_strings(self) -> Dict[str, str]:
        return {
            "period_start": self.start.isoformat(),
            "period_end": self.end.isoformat(),
            "due_date": self.due.isoformat(),
        }


@dataclass
class InvoiceOutcome:
    created: bool
    invoice: Optional[Dict[str, Any]] = None
    skipped_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return not self.created


def add_months(d: date, months: int) -> date:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def billing_date(now: datetime) -> date:
    """UTC calendar day of now (naive datetimes are taken as UTC)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).date()


def compute_billing_period(now: datetime) -> BillingPeriod:
    start = billing_date(now)
    return BillingPeriod(start=start, end=add_months(start, 1), due=start + timedelta(days=DUE_DAYS))


def period_bounds_as_datetimes(period: BillingPeriod) -> Dict[str, datetime]:
    """Subscription period fields are stored as UTC midnights."""
    return {
        "current_period_start": datetime.combine(period.start, datetime.min.time(), tzinfo=timezone.utc),
        "current_period_end": datetime.combine(period.end, datetime.min.time(), tzinfo=timezone.utc),
    }


def build_description(plan_slug: str, period: BillingPeriod) -> str:
    return "Assinatura {} - {} a {}".format(
        plan_registry.get_display_name(plan_slug),
        period.start.strftime("%d/%m/%Y"),
        period.end.strftime("%d/%m/%Y"),
    )


def _as_date_str(value: DateLike) -> str:
    if isinstance(value, datetime):
        return billing_date(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


class InvoiceGenerator:
    """Creates at most one invoice per (subscription_id, period_start)."""

    async def find_invoice(self, subscription_id: str, period_start: DateLike) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.invoices.find_one(
            {"subscription_id": subscription_id, "period_start": _as_date_str(period_start)},
            {"_id": 0},
        )

    async def ensure_invoice(
        self,
        subscription_id: str,
        condominium_id: str,
        period_start: DateLike,
        period_end: DateLike,
        due_date: DateLike,
        amount: float,
        description: str,
    ) -> InvoiceOutcome:
        """Create the invoice for this period, or return Skipped if it exists.

        Storage errors other than a duplicate key propagate: an invoice that
        could not be written is a hard stop for this subscription.
        """
        if amount is None or amount <= 0:
            return InvoiceOutcome(created=False, skipped_reason=SKIP_ZERO_AMOUNT)

        start_str = _as_date_str(period_start)
        existing = await self.find_invoice(subscription_id, start_str)
        if existing:
            logger.info(f"Invoice already exists for subscription {subscription_id} period {start_str}")
            return InvoiceOutcome(created=False, invoice=existing, skipped_reason=SKIP_ALREADY_EXISTS)

        invoice = Invoice(
            subscription_id=subscription_id,
            condominium_id=condominium_id,
            amount=round(float(amount), 2),
            status=InvoiceStatus.PENDING,
            due_date=_as_date_str(due_date),
            period_start=start_str,
            period_end=_as_date_str(period_end),
            description=description,
        )
        doc = invoice.model_dump()
        doc["status"] = invoice.status.value

        db = database.get_db()
        try:
            await db.invoices.insert_one(doc)
        except DuplicateKeyError:
            logger.info(f"Concurrent run already created invoice for subscription {subscription_id} period {start_str}")
            existing = await self.find_invoice(subscription_id, start_str)
            return InvoiceOutcome(created=False, invoice=existing, skipped_reason=SKIP_CONCURRENT_INSERT)

        doc.pop("_id", None)
        logger.info(f"Created invoice {invoice.id} for subscription {subscription_id} ({invoice.amount:.2f})")
        await create_audit_log(
            action=AuditAction.INVOICE_CREATED,
            actor_id="system",
            condominium_id=condominium_id,
            resource_type="invoice",
            resource_id=invoice.id,
            metadata={"subscription_id": subscription_id, "period_start": start_str, "amount": invoice.amount},
        )
        return InvoiceOutcome(created=True, invoice=doc)


invoice_generator = InvoiceGenerator()
