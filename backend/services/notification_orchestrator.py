"""
WhatsApp Notification Orchestrator.
Single entry point for outbound WhatsApp messages: template lookup, rendering,
phone normalization, provider send, and the notifications_sent record.
Never raises across the dispatch boundary: every outcome is a DispatchResult.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from database import database
from models import AuditAction, NotificationSent, NotificationTemplate, ProviderConfig
from services.template_renderer import render
from services.whatsapp_providers import mask_phone, normalize_phone, send_whatsapp_message
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    notification_id: Optional[str] = None  # notifications_sent.id when a send was attempted
    details: Dict[str, Any] = field(default_factory=dict)


async def load_active_provider_config() -> Optional[ProviderConfig]:
    """Most recently created active whatsapp_config row, or None."""
    db = database.get_db()
    rows = await db.whatsapp_config.find(
        {"is_active": True},
        {"_id": 0},
    ).sort("created_at", -1).limit(1).to_list(1)
    if not rows:
        return None
    try:
        return ProviderConfig(**rows[0])
    except Exception as e:
        logger.error(f"Invalid whatsapp_config row: {e}")
        return None


class NotificationOrchestrator:
    """Render + send + record. Callers see only DispatchResult."""

    async def dispatch(
        self,
        template_slug: str,
        variables: Dict[str, Any],
        recipient_phone: Optional[str],
        provider_config: Optional[ProviderConfig],
        context: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        try:
            return await self._dispatch(template_slug, variables, recipient_phone, provider_config, context)
        except Exception as e:
            logger.exception(f"Dispatch of {template_slug} failed unexpectedly: {e}")
            return DispatchResult(success=False, error=str(e) or e.__class__.__name__)

    async def _dispatch(
        self,
        template_slug: str,
        variables: Dict[str, Any],
        recipient_phone: Optional[str],
        provider_config: Optional[ProviderConfig],
        context: Optional[Dict[str, Any]],
    ) -> DispatchResult:
        db = database.get_db()

        if provider_config is None:
            logger.warning(f"WhatsApp provider not configured, cannot send {template_slug}")
            await create_audit_log(
                action=AuditAction.NOTIFICATION_PROVIDER_NOT_CONFIGURED,
                metadata={"template_slug": template_slug},
            )
            return DispatchResult(success=False, error="WhatsApp não configurado")

        template_doc = await db.whatsapp_templates.find_one(
            {"slug": template_slug, "is_active": True},
            {"_id": 0},
        )
        if not template_doc:
            logger.warning(f"WhatsApp template not found or inactive: {template_slug}")
            return DispatchResult(success=False, error=f"Template {template_slug} not found or inactive")

        phone = normalize_phone(recipient_phone)
        if not phone:
            return DispatchResult(success=False, error="Recipient phone missing")

        template = NotificationTemplate(**{"slug": template_slug, **template_doc})
        body = render(template.content, variables)
        result = await send_whatsapp_message(phone, body, provider_config)

        provider_name = getattr(provider_config.provider, "value", provider_config.provider)
        record = NotificationSent(
            recipient_phone=phone,
            template_slug=template_slug,
            rendered_body=body,
            provider=provider_name,
            success=result.success,
            provider_message_id=result.message_id,
            error=result.error,
            sent_at=datetime.now(timezone.utc),
            provider_status="sent" if result.success else "failed",
            context={k: str(v) for k, v in (context or {}).items()},
        )
        try:
            await db.notifications_sent.insert_one(record.model_dump())
        except Exception as e:
            # The message already left (or failed at) the provider; the send result stands.
            logger.error(f"Failed to record dispatch of {template_slug} to {mask_phone(phone)}: {e}")

        if result.success:
            logger.info(f"WhatsApp {template_slug} sent to {mask_phone(phone)}: {result.message_id}")
            return DispatchResult(
                success=True,
                provider_message_id=result.message_id,
                notification_id=record.id,
            )

        logger.warning(f"WhatsApp {template_slug} to {mask_phone(phone)} failed: {result.error}")
        await create_audit_log(
            action=AuditAction.NOTIFICATION_FAILED,
            condominium_id=(context or {}).get("condominium_id"),
            resource_type="notification",
            resource_id=record.id,
            metadata={"template_slug": template_slug, "provider": provider_name, "error": result.error},
        )
        return DispatchResult(
            success=False,
            error=result.error,
            notification_id=record.id,
            details={"error_code": result.error_code},
        )


notification_orchestrator = NotificationOrchestrator()
