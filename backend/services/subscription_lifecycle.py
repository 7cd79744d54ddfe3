"""
Subscription Lifecycle Manager - trial end and period rollover.

For each active subscription, independently:
  trial, trial_ends_at > now           -> skip (still in trial)
  trial, trial_ends_at <= now          -> trial-end transition
  paid, period end missing or <= now   -> renewal transition
  paid, period still open              -> skip

A transition ensures the invoice (paid plans only), advances the period,
resets usage counters, and then notifies the condominium owner. Billing state
is the source of truth: notification failures are counted and reported but
never undo an invoice or a period advance. One subscription failing never
stops the others.
"""
import logging
import os
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from database import database
from models import AuditAction, ProviderConfig, Subscription, TemplateSlug
from services.invoice_generator import (
    BillingPeriod,
    InvoiceOutcome,
    build_description,
    compute_billing_period,
    invoice_generator,
    period_bounds_as_datetimes,
)
from services.notification_orchestrator import load_active_provider_config, notification_orchestrator
from services.plan_registry import plan_registry
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

APP_BASE_URL = os.getenv("APP_BASE_URL", "https://notificacondo.com.br")

TRIAL_ACTIVE = "trial_active"
TRIAL_END = "trial_end"
RENEWAL = "renewal"
PERIOD_OPEN = "period_open"

_LOAD_FROM_DB = object()


@dataclass
class RunResult:
    processed: int = 0
    invoices_created: int = 0
    trials_ended: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    errors: List[str] = field(default_factory=list)
    notification_errors: List[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def as_utc(value: Any) -> Optional[datetime]:
    """Mongo returns naive UTC datetimes; API payloads may carry ISO strings."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def classify(subscription: Dict[str, Any], now: datetime) -> str:
    now = as_utc(now)
    if subscription.get("is_trial"):
        trial_ends_at = as_utc(subscription.get("trial_ends_at"))
        if trial_ends_at is not None and trial_ends_at > now:
            return TRIAL_ACTIVE
        return TRIAL_END
    period_end = as_utc(subscription.get("current_period_end"))
    if period_end is None or period_end <= now:
        return RENEWAL
    return PERIOD_OPEN


def format_brl(amount: float) -> str:
    """49.9 -> '49,90'; 1234.5 -> '1.234,50'."""
    return f"{amount:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")


class SubscriptionLifecycleManager:

    async def fetch_active_subscriptions(self) -> List[Dict[str, Any]]:
        db = database.get_db()
        projection = {"_id": 0, **{name: 1 for name in Subscription.model_fields}}
        cursor = db.subscriptions.find({"active": True}, projection)
        return await cursor.to_list(length=None)

    async def run_billing_cycle(
        self,
        now: Optional[datetime] = None,
        subscriptions: Optional[List[Dict[str, Any]]] = None,
        provider_config: Any = _LOAD_FROM_DB,
        dry_run: bool = False,
    ) -> RunResult:
        """One pass over active subscriptions. Per-item failures land in
        RunResult.errors; only a failure to list subscriptions propagates."""
        now = as_utc(now) or datetime.now(timezone.utc)
        result = RunResult(dry_run=dry_run)

        if subscriptions is None:
            subscriptions = await self.fetch_active_subscriptions()
        logger.info(f"Billing cycle at {now.isoformat()}: {len(subscriptions)} active subscriptions")

        if provider_config is _LOAD_FROM_DB:
            provider_config = None if dry_run else await load_active_provider_config()

        for subscription in subscriptions:
            sub_id = subscription.get("id")
            try:
                await self._process_subscription(subscription, now, provider_config, result, dry_run)
            except Exception as e:
                logger.exception(f"Error processing subscription {sub_id}: {e}")
                result.errors.append(f"Subscription {sub_id}: {e}")

        logger.info(
            "Billing cycle complete: processed=%s invoices=%s trials_ended=%s sent=%s failed=%s errors=%s",
            result.processed, result.invoices_created, result.trials_ended,
            result.notifications_sent, result.notifications_failed, len(result.errors),
        )
        return result

    async def _process_subscription(
        self,
        subscription: Dict[str, Any],
        now: datetime,
        provider_config: Optional[ProviderConfig],
        result: RunResult,
        dry_run: bool,
    ) -> None:
        if not subscription.get("active", True):
            return
        transition = classify(subscription, now)
        if transition in (TRIAL_ACTIVE, PERIOD_OPEN):
            return

        sub_id = subscription["id"]
        plan = subscription.get("plan")
        ending_trial = transition == TRIAL_END
        period = compute_billing_period(now)
        price = plan_registry.get_price(plan)

        if dry_run:
            if price > 0 and not await invoice_generator.find_invoice(sub_id, period.start):
                result.invoices_created += 1
            if ending_trial:
                result.trials_ended += 1
            result.processed += 1
            return

        outcome: Optional[InvoiceOutcome] = None
        if price > 0:
            # Raises on storage failure: no period advance, no notification.
            outcome = await invoice_generator.ensure_invoice(
                subscription_id=sub_id,
                condominium_id=subscription.get("condominium_id"),
                period_start=period.start,
                period_end=period.end,
                due_date=period.due,
                amount=price,
                description=build_description(plan, period),
            )
            if outcome.created:
                result.invoices_created += 1
        else:
            logger.info(f"Free plan for subscription {sub_id}, advancing period without invoice")

        try:
            await self._advance_period(subscription, period, ending_trial)
        except Exception as e:
            logger.error(f"Error updating subscription {sub_id}: {e}")
            result.errors.append(f"Subscription {sub_id} update: {e}")

        if ending_trial:
            result.trials_ended += 1
        result.processed += 1

        if outcome is not None and outcome.created:
            await self._notify(
                subscription, TemplateSlug.INVOICE_GENERATED.value, period, price,
                provider_config, result, invoice_id=outcome.invoice.get("id"),
            )
        elif price <= 0 and ending_trial:
            await self._notify(
                subscription, TemplateSlug.TRIAL_ENDED_FREE.value, period, price,
                provider_config, result,
            )

    async def _advance_period(self, subscription: Dict[str, Any], period: BillingPeriod, ending_trial: bool) -> None:
        db = database.get_db()
        update = {
            **period_bounds_as_datetimes(period),
            "notifications_used": 0,
            "warnings_used": 0,
            "fines_used": 0,
            "updated_at": datetime.now(timezone.utc),
        }
        if ending_trial:
            update["is_trial"] = False
        await db.subscriptions.update_one({"id": subscription["id"]}, {"$set": update})

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_TRIAL_ENDED if ending_trial else AuditAction.SUBSCRIPTION_PERIOD_RENEWED,
            actor_id="system",
            condominium_id=subscription.get("condominium_id"),
            resource_type="subscription",
            resource_id=subscription["id"],
            metadata={"plan": subscription.get("plan"), **period.as_strings()},
        )

    async def resolve_owner_contact(self, condominium_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Owner (síndico) name/phone for a condominium, or None."""
        if not condominium_id:
            return None
        db = database.get_db()
        condo = await db.condominiums.find_one(
            {"id": condominium_id},
            {"_id": 0, "id": 1, "name": 1, "owner_id": 1},
        )
        if not condo or not condo.get("owner_id"):
            return None
        profile = await db.profiles.find_one(
            {"user_id": condo["owner_id"]},
            {"_id": 0, "full_name": 1, "phone": 1},
        )
        if not profile:
            return None
        return {
            "condominium_name": condo.get("name") or "",
            "full_name": profile.get("full_name") or "",
            "phone": profile.get("phone"),
        }

    async def _notify(
        self,
        subscription: Dict[str, Any],
        template_slug: str,
        period: BillingPeriod,
        amount: float,
        provider_config: Optional[ProviderConfig],
        result: RunResult,
        invoice_id: Optional[str] = None,
    ) -> None:
        sub_id = subscription["id"]
        try:
            contact = await self.resolve_owner_contact(subscription.get("condominium_id"))
            if not contact or not contact.get("phone"):
                result.notifications_failed += 1
                result.notification_errors.append(f"Subscription {sub_id}: owner has no phone")
                return

            app_url = (provider_config.app_url if provider_config and provider_config.app_url else APP_BASE_URL).rstrip("/")
            variables = {
                "nome": contact["full_name"],
                "condominio": contact["condominium_name"],
                "plano": plan_registry.get_display_name(subscription.get("plan")),
                "periodo": f"{period.start.strftime('%d/%m/%Y')} a {period.end.strftime('%d/%m/%Y')}",
                "valor": format_brl(amount),
                "vencimento": period.due.strftime("%d/%m/%Y"),
                "link": f"{app_url}/sindico/subscriptions",
            }
            dispatch = await notification_orchestrator.dispatch(
                template_slug,
                variables,
                contact["phone"],
                provider_config,
                context={
                    "subscription_id": sub_id,
                    "condominium_id": subscription.get("condominium_id"),
                    "invoice_id": invoice_id or "",
                },
            )
        except Exception as e:
            logger.error(f"Notification for subscription {sub_id} failed: {e}")
            result.notifications_failed += 1
            result.notification_errors.append(f"Subscription {sub_id}: {e}")
            return

        if dispatch.success:
            result.notifications_sent += 1
        else:
            result.notifications_failed += 1
            result.notification_errors.append(f"Subscription {sub_id}: {dispatch.error}")


subscription_lifecycle = SubscriptionLifecycleManager()
