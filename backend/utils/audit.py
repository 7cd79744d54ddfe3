"""Audit trail for billing and dispatch side effects (audit_logs collection).

Writes are best-effort: a failed audit insert is logged and never fails the
billing or notification step that produced it.
"""
from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def build_audit_document(
    action: AuditAction,
    actor_id: Optional[str] = None,
    condominium_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    entry = AuditLog(
        action=action,
        actor_id=actor_id or SYSTEM_ACTOR,
        condominium_id=condominium_id,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata=metadata or None,
    )
    doc = entry.model_dump()
    doc["action"] = entry.action.value
    doc["timestamp"] = entry.timestamp.isoformat()
    return doc


async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    condominium_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Insert one audit entry. Returns its audit_id, or "" when the write failed.

    Args:
        action: what happened (AuditAction)
        actor_id: operator id; scheduled jobs are recorded as "system"
        condominium_id: tenant affected, when there is one
        resource_type / resource_id: e.g. "invoice" + invoice id, "job" + job name
        metadata: free-form context (period, amounts, provider error)
    """
    try:
        doc = build_audit_document(action, actor_id, condominium_id, resource_type, resource_id, metadata)
        await database.get_db().audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {doc['action']} {resource_type or ''} {resource_id or ''}".rstrip())
        return doc["audit_id"]
    except Exception as e:
        logger.error(f"Failed to create audit log {getattr(action, 'value', action)}: {e}")
        return ""
