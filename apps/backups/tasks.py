"""
Celery tasks for the backup system.

Scheduled backups are fired by Celery Beat (see ``apps.backups.scheduling``).
A trigger that arrives while the same tier is still running, or while a
restore is in progress, is skipped rather than queued or retried.
"""

import logging
from typing import Optional

from celery import shared_task

from .exceptions import RunInProgress
from .models import BackupRun
from .services import BackupService

logger = logging.getLogger(__name__)


def _run_summary(run: BackupRun) -> dict:
    return {
        "run_id": str(run.id),
        "tier": run.tier,
        "status": run.status,
        "backup_id": run.backup_id,
        "error": run.error,
        "degraded": run.degraded,
    }


@shared_task(
    bind=True,
    name="apps.backups.tasks.scheduled_backup",
)
def scheduled_backup(self, tier: str):
    """
    Run the scheduled backup of one tier.

    Returns:
        Run summary dict, or ``{"status": "SKIPPED", ...}`` if the tier was busy
    """
    logger.info(f"Scheduled {tier} backup triggered (task: {self.request.id})")
    service = BackupService.from_settings(owner=f"celery:{self.request.id}")

    try:
        run = service.run_backup(tier, trigger=BackupRun.SCHEDULED)
    except RunInProgress as e:
        logger.warning(f"Scheduled {tier} backup skipped: {e}")
        return {"tier": tier, "status": "SKIPPED", "reason": str(e)}

    return _run_summary(run)


@shared_task(
    bind=True,
    name="apps.backups.tasks.manual_backup",
)
def manual_backup(self, tier: str = "manual", initiated_by: Optional[str] = None):
    """Run a manual backup queued from the command line."""
    logger.info(
        f"Manual {tier} backup requested by {initiated_by or 'system'} (task: {self.request.id})"
    )
    service = BackupService.from_settings(owner=initiated_by or f"celery:{self.request.id}")

    try:
        run = service.run_backup(tier, trigger=BackupRun.MANUAL)
    except RunInProgress as e:
        logger.warning(f"Manual {tier} backup rejected: {e}")
        return {"tier": tier, "status": "REJECTED", "reason": str(e)}

    return _run_summary(run)


@shared_task(name="apps.backups.tasks.enforce_retention")
def enforce_retention(tier: Optional[str] = None):
    """Force a retention pass for one tier, or all tiers."""
    service = BackupService.from_settings()
    outcome = service.cleanup(tier)
    return {
        "results": [result.to_dict() for result in outcome["results"]],
        "busy": outcome["busy"],
        "purged": outcome["purged"],
    }


@shared_task(name="apps.backups.tasks.purge_stale_temp")
def purge_stale_temp():
    """Remove scratch entries left behind by crashed runs."""
    service = BackupService.from_settings()
    purged = service.purge_stale_temp()
    if purged:
        logger.info(f"Purged {purged} stale scratch entr{'y' if purged == 1 else 'ies'}")
    return purged
