"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and routes/jobs (manual run).
Each run_* goes through the execution log and returns a dict with "message"
plus the job's own counters. Paused scheduled runs return {"skipped": True}.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from models import TriggerType
from services.execution_log import execution_log

logger = logging.getLogger(__name__)

GENERATE_INVOICES = "generate-invoices"
NOTIFY_TRIAL_ENDING = "notify-trial-ending"
SYNC_NOTIFICATION_STATUS = "sync-notification-status"


async def _generate_invoices(now: Optional[datetime] = None, dry_run: bool = False, **_):
    from services.subscription_lifecycle import subscription_lifecycle
    result = await subscription_lifecycle.run_billing_cycle(now or datetime.now(timezone.utc), dry_run=dry_run)
    payload = result.to_dict()
    payload["message"] = (
        f"Processadas {result.processed} assinaturas, {result.invoices_created} faturas geradas"
    )
    return payload


async def _notify_trial_ending(now: Optional[datetime] = None, dry_run: bool = False, **_):
    from services.trial_reminders import notify_trials_ending
    return await notify_trials_ending(now or datetime.now(timezone.utc), dry_run=dry_run)


async def _sync_notification_status(limit: Optional[int] = None, dry_run: bool = False, **_):
    from services.notification_status_sync import SYNC_BATCH_LIMIT, sync_notification_statuses
    return await sync_notification_statuses(limit=limit or SYNC_BATCH_LIMIT, dry_run=dry_run)


async def run_generate_invoices(trigger_type=TriggerType.SCHEDULED, **options):
    try:
        result = await execution_log.run(GENERATE_INVOICES, trigger_type, _generate_invoices, **options)
        logger.info(f"Generate invoices job completed: {result.get('message')}")
        return result
    except Exception as e:
        logger.error(f"Generate invoices job failed: {e}")
        raise


async def run_notify_trial_ending(trigger_type=TriggerType.SCHEDULED, **options):
    try:
        result = await execution_log.run(NOTIFY_TRIAL_ENDING, trigger_type, _notify_trial_ending, **options)
        logger.info(f"Trial ending reminders job completed: {result.get('message')}")
        return result
    except Exception as e:
        logger.error(f"Trial ending reminders job failed: {e}")
        raise


async def run_sync_notification_status(trigger_type=TriggerType.SCHEDULED, **options):
    try:
        result = await execution_log.run(
            SYNC_NOTIFICATION_STATUS, trigger_type, _sync_notification_status, **options
        )
        logger.info(f"Notification status sync job completed: {result.get('message')}")
        return result
    except Exception as e:
        logger.error(f"Notification status sync job failed: {e}")
        raise


# Job id -> runner, for manual "run now"
JOB_RUNNERS = {
    GENERATE_INVOICES: run_generate_invoices,
    NOTIFY_TRIAL_ENDING: run_notify_trial_ending,
    SYNC_NOTIFICATION_STATUS: run_sync_notification_status,
}
