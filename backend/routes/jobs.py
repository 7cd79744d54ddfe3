"""Job Routes - manual run, pause/resume and execution history.

POST /api/jobs/{job_name}/run     - run now (X-Trigger-Type: scheduled|manual, default manual)
POST /api/jobs/{job_name}/pause   - pause scheduled runs
POST /api/jobs/{job_name}/resume  - resume scheduled runs
GET  /api/jobs/{job_name}/logs    - recent executions

All endpoints require X-Job-Secret matching JOB_TRIGGER_SECRET when it is set.
"""
from fastapi import APIRouter, HTTPException, Header, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime
from typing import Optional
from models import AuditAction, TriggerType
from services.execution_log import execution_log
from utils.audit import create_audit_log
import logging
import os

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class RunJobRequest(BaseModel):
    dry_run: bool = False
    now: Optional[datetime] = None  # billing / reminder clock override
    limit: Optional[int] = None  # reconciliation batch size


class PauseJobRequest(BaseModel):
    actor_id: Optional[str] = None


def _job_secret_ok(header_secret: str = None) -> bool:
    configured = os.getenv("JOB_TRIGGER_SECRET")
    if not configured or not configured.strip():
        return True
    return bool(header_secret and header_secret.strip() == configured.strip())


def require_job_secret(x_job_secret: str = None) -> None:
    if not _job_secret_ok(x_job_secret):
        logger.warning("Job endpoint rejected: missing or invalid X-Job-Secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _runner_or_400(job_name: str):
    from job_runner import JOB_RUNNERS
    runner = JOB_RUNNERS.get((job_name or "").strip())
    if runner is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid job. Use one of: {', '.join(sorted(JOB_RUNNERS.keys()))}"
        )
    return runner


@router.post("/{job_name}/run")
async def run_job_now(
    job_name: str,
    body: Optional[RunJobRequest] = None,
    x_trigger_type: str = Header("manual", alias="X-Trigger-Type"),
    x_job_secret: str = Header(None, alias="X-Job-Secret"),
):
    """Run a single background job by name. Paused jobs only skip scheduled triggers."""
    require_job_secret(x_job_secret)
    runner = _runner_or_400(job_name)
    try:
        trigger_type = TriggerType((x_trigger_type or "manual").strip().lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Trigger-Type")

    body = body or RunJobRequest()
    options = {"dry_run": body.dry_run}
    if body.now is not None:
        options["now"] = body.now
    if body.limit is not None:
        options["limit"] = body.limit

    try:
        result = await runner(trigger_type=trigger_type, **options)
    except Exception as e:
        logger.exception(f"Job run error ({job_name}): {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(e) or e.__class__.__name__},
        )

    if result.get("skipped"):
        return {"success": True, "skipped": True, "message": result.get("message")}

    if trigger_type == TriggerType.MANUAL:
        await create_audit_log(
            action=AuditAction.JOB_MANUAL_RUN,
            resource_type="job",
            resource_id=job_name,
            metadata={"dry_run": body.dry_run, "log_id": result.get("log_id")},
        )
    return {"success": True, "job": job_name, "results": result}


@router.post("/{job_name}/pause")
async def pause_job(
    job_name: str,
    body: Optional[PauseJobRequest] = None,
    x_job_secret: str = Header(None, alias="X-Job-Secret"),
):
    require_job_secret(x_job_secret)
    _runner_or_400(job_name)
    control = await execution_log.set_paused(job_name, True, actor_id=body.actor_id if body else None)
    return {"success": True, "job": job_name, "paused": control["paused"]}


@router.post("/{job_name}/resume")
async def resume_job(
    job_name: str,
    body: Optional[PauseJobRequest] = None,
    x_job_secret: str = Header(None, alias="X-Job-Secret"),
):
    require_job_secret(x_job_secret)
    _runner_or_400(job_name)
    control = await execution_log.set_paused(job_name, False, actor_id=body.actor_id if body else None)
    return {"success": True, "job": job_name, "paused": control["paused"]}


@router.get("/{job_name}/logs")
async def list_job_logs(
    job_name: str,
    limit: int = 50,
    x_job_secret: str = Header(None, alias="X-Job-Secret"),
):
    require_job_secret(x_job_secret)
    _runner_or_400(job_name)
    logs = await execution_log.recent(job_name, limit=max(1, min(limit, 200)))
    paused = await execution_log.is_paused(job_name)
    return {"job": job_name, "paused": paused, "logs": logs, "count": len(logs)}
