"""
Trial ending reminders: WhatsApp notice to the owner of every condominium
whose trial ends REMINDER_DAYS_AHEAD days from today (UTC calendar day).
A reminder already delivered for a subscription is not sent again.
"""
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from database import database
from models import TemplateSlug
from services.notification_orchestrator import load_active_provider_config, notification_orchestrator
from services.plan_registry import plan_registry
from services.subscription_lifecycle import APP_BASE_URL, as_utc, subscription_lifecycle

logger = logging.getLogger(__name__)

REMINDER_DAYS_AHEAD = 2


def reminder_window(now: datetime, days_ahead: int = REMINDER_DAYS_AHEAD):
    target = (as_utc(now) + timedelta(days=days_ahead)).date()
    start = datetime.combine(target, time.min, tzinfo=timezone.utc)
    end = datetime.combine(target, time.max, tzinfo=timezone.utc)
    return start, end


async def _already_reminded(subscription_id: str) -> bool:
    db = database.get_db()
    existing = await db.notifications_sent.find_one(
        {
            "template_slug": TemplateSlug.TRIAL_ENDING.value,
            "context.subscription_id": subscription_id,
            "success": True,
        },
        {"_id": 0, "id": 1},
    )
    return existing is not None


async def notify_trials_ending(
    now: Optional[datetime] = None,
    days_ahead: int = REMINDER_DAYS_AHEAD,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Send trial_ending reminders. dry_run counts pending reminders without sending."""
    now = as_utc(now) or datetime.now(timezone.utc)
    start, end = reminder_window(now, days_ahead)
    logger.info(f"Looking for trials ending between {start.isoformat()} and {end.isoformat()}")

    db = database.get_db()
    subscriptions: List[Dict[str, Any]] = await db.subscriptions.find(
        {"active": True, "is_trial": True, "trial_ends_at": {"$gte": start, "$lte": end}},
        {"_id": 0},
    ).to_list(length=None)

    results = {"notified": 0, "failed": 0, "skipped": 0, "errors": [], "dry_run": dry_run}
    if not subscriptions:
        results["message"] = f"Nenhum trial terminando em {days_ahead} dias"
        return results

    if dry_run:
        for sub in subscriptions:
            if await _already_reminded(sub.get("id")):
                results["skipped"] += 1
        pending = len(subscriptions) - results["skipped"]
        results["pending"] = pending
        results["message"] = f"Simulação: {pending} lembretes seriam enviados"
        return results

    provider_config = await load_active_provider_config()
    if provider_config is None:
        raise RuntimeError("WhatsApp não configurado")
    app_url = (provider_config.app_url or APP_BASE_URL).rstrip("/")

    for sub in subscriptions:
        sub_id = sub.get("id")
        try:
            if await _already_reminded(sub_id):
                results["skipped"] += 1
                continue
            contact = await subscription_lifecycle.resolve_owner_contact(sub.get("condominium_id"))
            if not contact or not contact.get("phone"):
                results["failed"] += 1
                results["errors"].append(f"Subscription {sub_id}: owner has no phone")
                continue

            trial_ends_at = as_utc(sub.get("trial_ends_at"))
            dispatch = await notification_orchestrator.dispatch(
                TemplateSlug.TRIAL_ENDING.value,
                {
                    "nome": contact["full_name"],
                    "condominio": contact["condominium_name"],
                    "plano": plan_registry.get_display_name(sub.get("plan")),
                    "dias": days_ahead,
                    "data_fim": trial_ends_at.strftime("%d/%m/%Y"),
                    "link": f"{app_url}/sindico/subscriptions",
                },
                contact["phone"],
                provider_config,
                context={"subscription_id": sub_id, "condominium_id": sub.get("condominium_id")},
            )
            if dispatch.success:
                results["notified"] += 1
            else:
                results["failed"] += 1
                results["errors"].append(f"Subscription {sub_id}: {dispatch.error}")
        except Exception as e:
            logger.error(f"Trial reminder for subscription {sub_id} failed: {e}")
            results["failed"] += 1
            results["errors"].append(f"Subscription {sub_id}: {e}")

    results["message"] = f"Lembretes de fim de trial enviados: {results['notified']}"
    logger.info(f"Trial ending reminders: notified={results['notified']} failed={results['failed']} skipped={results['skipped']}")
    return results
