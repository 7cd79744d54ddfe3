"""Notification Routes - delivery status views over notifications_sent.

Status is derived on read from delivered_at/read_at/provider_status; counts
cascade (a read message also counts as delivered and sent).
"""
from fastapi import APIRouter, HTTPException, Header, status
from datetime import datetime, timedelta, timezone
from typing import Optional
from database import database
from routes.jobs import require_job_secret
from services.delivery_status import resolve_record_status, summarize_statuses
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/notifications", tags=["notifications"])

SUMMARY_SCAN_LIMIT = 5000


def _query(days: int, condominium_id: Optional[str] = None, template_slug: Optional[str] = None) -> dict:
    if days < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="days must be >= 1")
    query = {"sent_at": {"$gte": datetime.now(timezone.utc) - timedelta(days=days)}}
    if condominium_id:
        query["context.condominium_id"] = condominium_id
    if template_slug:
        query["template_slug"] = template_slug
    return query


@router.get("/summary")
async def notification_summary(
    days: int = 30,
    condominium_id: Optional[str] = None,
    template_slug: Optional[str] = None,
    x_job_secret: str = Header(None, alias="X-Job-Secret"),
):
    require_job_secret(x_job_secret)
    db = database.get_db()
    rows = await db.notifications_sent.find(
        _query(days, condominium_id, template_slug),
        {"_id": 0, "sent_at": 1, "delivered_at": 1, "read_at": 1, "provider_status": 1},
    ).to_list(SUMMARY_SCAN_LIMIT)
    return {"days": days, "counts": summarize_statuses(rows).to_dict()}


@router.get("/recent")
async def recent_notifications(
    days: int = 7,
    limit: int = 50,
    condominium_id: Optional[str] = None,
    template_slug: Optional[str] = None,
    x_job_secret: str = Header(None, alias="X-Job-Secret"),
):
    require_job_secret(x_job_secret)
    limit = max(1, min(limit, 200))
    db = database.get_db()
    rows = await db.notifications_sent.find(
        _query(days, condominium_id, template_slug),
        {"_id": 0, "rendered_body": 0},
    ).sort("sent_at", -1).limit(limit).to_list(limit)
    for row in rows:
        row["status"] = resolve_record_status(row).value
    return {"notifications": rows, "count": len(rows)}
