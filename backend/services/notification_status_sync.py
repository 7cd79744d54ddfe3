"""
Delivery status updates for notifications_sent.

Two paths feed delivered_at/read_at/provider_status:
- provider webhooks (apply_webhook_event), one payload per status change;
- the sync-notification-status job, which reconciles provider_status with
  timestamps that were set without it (e.g. a webhook that carried read_at
  but arrived before the row's status was updated).
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from database import database
from services.delivery_status import normalize_provider_status, normalize_wppconnect_ack

logger = logging.getLogger(__name__)

SYNC_BATCH_LIMIT = 100


@dataclass
class WebhookEvent:
    message_id: Optional[str]
    status: Optional[str]
    source: str


def parse_webhook_payload(payload: Dict[str, Any]) -> WebhookEvent:
    """Recognize the provider payload shape.

    Z-PRO {messageId, status}; Z-API {id, status}; Evolution {key: {id}, update};
    WPPConnect {ack} (no message id, so it cannot be matched to a row).
    """
    payload = payload or {}
    key = payload.get("key") if isinstance(payload.get("key"), dict) else {}

    if payload.get("messageId") and payload.get("status"):
        return WebhookEvent(str(payload["messageId"]), normalize_provider_status(payload["status"]), "zpro")
    if payload.get("id") and payload.get("status"):
        return WebhookEvent(str(payload["id"]), normalize_provider_status(payload["status"]), "zapi")
    if key.get("id") and payload.get("update"):
        return WebhookEvent(str(key["id"]), normalize_provider_status(payload["update"]), "evolution")
    if payload.get("ack") is not None:
        return WebhookEvent(None, normalize_wppconnect_ack(payload["ack"]), "wppconnect")
    return WebhookEvent(None, None, "unknown")


async def apply_webhook_event(event: WebhookEvent, now: Optional[datetime] = None) -> int:
    """Write the event onto every row with this provider_message_id.
    Returns the number of rows matched. Events without a message id are ignored."""
    if not event.message_id or not event.status:
        logger.info(f"Webhook from {event.source} without message id, skipping update")
        return 0

    now = now or datetime.now(timezone.utc)
    update: Dict[str, Any] = {"provider_status": event.status}
    if event.status == "delivered":
        update["delivered_at"] = now
    elif event.status == "read":
        update["read_at"] = now
        update["delivered_at"] = now

    db = database.get_db()
    result = await db.notifications_sent.update_many(
        {"provider_message_id": event.message_id},
        {"$set": update},
    )
    logger.info(f"Webhook {event.source} {event.message_id} -> {event.status}: {result.matched_count} row(s)")
    return result.matched_count


async def sync_notification_statuses(limit: int = SYNC_BATCH_LIMIT, dry_run: bool = False) -> Dict[str, Any]:
    """Align provider_status with delivered_at/read_at on rows still marked sent.

    With dry_run the rows needing an update are counted but not written.
    """
    db = database.get_db()
    rows = await db.notifications_sent.find(
        {"$or": [{"provider_status": "sent"}, {"provider_status": None}]},
        {"_id": 0, "id": 1, "provider_status": 1, "delivered_at": 1, "read_at": 1},
    ).limit(limit).to_list(limit)

    updated = 0
    errors = []
    for row in rows:
        update: Dict[str, Any] = {}
        if row.get("read_at") and row.get("provider_status") != "read":
            update["provider_status"] = "read"
            if not row.get("delivered_at"):
                update["delivered_at"] = row["read_at"]
        elif row.get("delivered_at") and row.get("provider_status") != "delivered":
            update["provider_status"] = "delivered"
        if not update:
            continue
        if dry_run:
            updated += 1
            continue
        try:
            await db.notifications_sent.update_one({"id": row["id"]}, {"$set": update})
            updated += 1
        except Exception as e:
            logger.error(f"Failed to sync notification {row.get('id')}: {e}")
            errors.append(f"Notification {row.get('id')}: {e}")

    logger.info(f"Notification status sync: checked={len(rows)} updated={updated}")
    return {
        "message": f"Status sincronizado para {updated} notificações",
        "checked": len(rows),
        "updated": updated,
        "errors": errors,
        "dry_run": dry_run,
    }
