"""Webhook Routes - WhatsApp provider delivery callbacks.

POST /api/webhooks/whatsapp - status callbacks from Z-PRO, Z-API, Evolution and
WPPConnect; validated by X-Webhook-Token when WHATSAPP_WEBHOOK_TOKEN is set.
"""
from fastapi import APIRouter, HTTPException, Request, Header, status
from services.notification_status_sync import parse_webhook_payload, apply_webhook_event
import logging
import os

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


def _whatsapp_webhook_token_ok(header_token: str = None) -> bool:
    """Return True if the request is authorized. When WHATSAPP_WEBHOOK_TOKEN is set, header must match."""
    configured = os.getenv("WHATSAPP_WEBHOOK_TOKEN")
    if not configured or not configured.strip():
        return True
    return bool(header_token and header_token.strip() == configured.strip())


@router.post("/api/webhooks/whatsapp")
async def whatsapp_webhook(
    request: Request,
    x_webhook_token: str = Header(None, alias="X-Webhook-Token"),
):
    """Normalize the provider payload and update notifications_sent by provider_message_id."""
    if not _whatsapp_webhook_token_ok(x_webhook_token):
        logger.warning("WhatsApp webhook rejected: missing or invalid X-Webhook-Token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    event = parse_webhook_payload(payload)
    if not event.message_id:
        return {"success": True, "message": "No message ID to process"}

    try:
        updated = await apply_webhook_event(event)
    except Exception as e:
        logger.error(f"WhatsApp webhook error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update status")

    return {
        "success": True,
        "message": "Status updated",
        "messageId": event.message_id,
        "status": event.status,
        "updated": updated,
    }
