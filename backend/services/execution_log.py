"""
Execution Log - one row per job run in edge_function_logs, plus the pause flag
per job in cron_job_controls.

A paused job still gets a row when the scheduler fires it (status "skipped"),
so the history shows that the schedule ran and was deliberately ignored.
Manual runs are not blocked by the pause flag.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from database import database
from models import AuditAction, ExecutionLogEntry, ExecutionStatus, TriggerType
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _value(enum_or_str: Any) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


def status_from_result(result: Optional[Dict[str, Any]]) -> ExecutionStatus:
    """partial when the job reported per-item errors, success otherwise."""
    if result and result.get("errors"):
        return ExecutionStatus.PARTIAL
    return ExecutionStatus.SUCCESS


class ExecutionLog:

    async def begin(self, function_name: str, trigger_type: TriggerType) -> str:
        entry = ExecutionLogEntry(function_name=function_name, trigger_type=trigger_type)
        doc = entry.model_dump()
        doc["trigger_type"] = _value(entry.trigger_type)
        doc["status"] = ExecutionStatus.RUNNING.value
        db = database.get_db()
        await db.edge_function_logs.insert_one(doc)
        return entry.id

    async def complete(
        self,
        log_id: str,
        status: ExecutionStatus,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        db = database.get_db()
        await db.edge_function_logs.update_one(
            {"id": log_id},
            {"$set": {
                "status": _value(status),
                "ended_at": datetime.now(timezone.utc),
                "result": result,
                "error_message": error_message,
            }},
        )

    async def record_skipped(self, function_name: str, trigger_type: TriggerType) -> str:
        now = datetime.now(timezone.utc)
        entry = ExecutionLogEntry(
            function_name=function_name,
            trigger_type=trigger_type,
            status=ExecutionStatus.SKIPPED,
            started_at=now,
            ended_at=now,
            result={"message": "Job pausado"},
        )
        doc = entry.model_dump()
        doc["trigger_type"] = _value(entry.trigger_type)
        doc["status"] = ExecutionStatus.SKIPPED.value
        db = database.get_db()
        await db.edge_function_logs.insert_one(doc)
        return entry.id

    async def is_paused(self, function_name: str) -> bool:
        db = database.get_db()
        control = await db.cron_job_controls.find_one(
            {"function_name": function_name},
            {"_id": 0, "paused": 1},
        )
        return bool(control and control.get("paused"))

    async def set_paused(self, function_name: str, paused: bool, actor_id: Optional[str] = None) -> Dict[str, Any]:
        db = database.get_db()
        now = datetime.now(timezone.utc)
        update = {
            "function_name": function_name,
            "paused": paused,
            "paused_at": now if paused else None,
            "paused_by": actor_id if paused else None,
            "updated_at": now,
        }
        await db.cron_job_controls.update_one(
            {"function_name": function_name},
            {"$set": update},
            upsert=True,
        )
        logger.info(f"Job {function_name} {'paused' if paused else 'resumed'} by {actor_id or 'system'}")
        await create_audit_log(
            action=AuditAction.JOB_PAUSED if paused else AuditAction.JOB_RESUMED,
            actor_id=actor_id,
            resource_type="job",
            resource_id=function_name,
        )
        return update

    async def recent(self, function_name: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        db = database.get_db()
        query = {"function_name": function_name} if function_name else {}
        cursor = db.edge_function_logs.find(query, {"_id": 0}).sort("started_at", -1).limit(limit)
        return await cursor.to_list(limit)

    async def _close(self, log_id: str, status: ExecutionStatus, **fields) -> None:
        # A failed log write must not replace the job outcome
        try:
            await self.complete(log_id, status, **fields)
        except Exception as e:
            logger.error(f"Failed to close execution log {log_id} as {status.value}: {e}")

    async def run(
        self,
        function_name: str,
        trigger_type: TriggerType,
        job: Callable[..., Awaitable[Dict[str, Any]]],
        **kwargs,
    ) -> Dict[str, Any]:
        """Run job under a log row. Re-raises after recording status=error."""
        trigger_type = TriggerType(_value(trigger_type))
        if trigger_type == TriggerType.SCHEDULED and await self.is_paused(function_name):
            log_id = await self.record_skipped(function_name, trigger_type)
            logger.info(f"Job {function_name} is paused, scheduled run skipped")
            return {"skipped": True, "message": "Job pausado", "log_id": log_id}

        log_id = await self.begin(function_name, trigger_type)
        try:
            result = await job(**kwargs)
        except Exception as e:
            logger.error(f"Job {function_name} failed: {e}")
            await self._close(log_id, ExecutionStatus.ERROR, error_message=str(e) or e.__class__.__name__)
            raise

        status = status_from_result(result)
        await self._close(log_id, status, result=result)
        logger.info(f"Job {function_name} finished with status {status.value}")
        return {**(result or {}), "log_id": log_id, "status": status.value}


execution_log = ExecutionLog()
