"""
Run lifecycle tracking.

``RunTracker`` is the only writer of ``BackupRun`` rows. Each terminal
transition hands exactly one event to the notifier and prunes the history
down to the configured limit.
"""

import logging
from typing import Iterable, List, Optional

from django.db import transaction
from django.utils import timezone

from .exceptions import InvalidTransition, RunAbandoned, error_type
from .models import Backup, BackupRestoreLog, BackupRun
from .notifiers import Notifier, RunEvent, get_notifier

logger = logging.getLogger(__name__)


class RunTracker:
    def __init__(self, notifier: Optional[Notifier] = None, history_limit: int = 100):
        self.notifier = notifier or get_notifier()
        self.history_limit = history_limit

    def start(self, tier: str, trigger: str = BackupRun.MANUAL) -> BackupRun:
        run = BackupRun.objects.create(tier=tier, trigger=trigger, status=BackupRun.PENDING)
        logger.info(f"Run {run.id} created for {tier} backup ({trigger.lower()})")
        return run

    def mark_running(self, run: BackupRun) -> BackupRun:
        self._check_not_terminal(run, BackupRun.RUNNING)
        run.status = BackupRun.RUNNING
        run.save(update_fields=["status"])
        return run

    def complete(
        self,
        run: BackupRun,
        backup: Backup,
        replication: Iterable = (),
        retention=None,
    ) -> BackupRun:
        """Mark a run COMPLETED; replication failures make it degraded, not failed."""
        self._check_not_terminal(run, BackupRun.COMPLETED)
        run.status = BackupRun.COMPLETED
        run.ended_at = timezone.now()
        run.backup = backup
        run.replication_errors = [
            {"destination": result.destination, "error": result.error}
            for result in replication
            if not result.ok
        ]
        run.retention_summary = retention.to_dict() if retention is not None else {}
        run.save(
            update_fields=["status", "ended_at", "backup", "replication_errors", "retention_summary"]
        )

        if run.degraded:
            logger.warning(
                f"Run {run.id} completed degraded: "
                f"{len(run.replication_errors)} destination(s) failed"
            )
        else:
            logger.info(f"Run {run.id} completed in {run.duration_ms}ms")

        self._finalize(run)
        return run

    def fail(self, run: BackupRun, error: BaseException, backup: Optional[Backup] = None) -> BackupRun:
        self._check_not_terminal(run, BackupRun.FAILED)
        run.status = BackupRun.FAILED
        run.ended_at = timezone.now()
        run.error = str(error) or type(error).__name__
        run.error_type = error_type(error)
        if backup is not None:
            run.backup = backup
        run.save(update_fields=["status", "ended_at", "error", "error_type", "backup"])

        logger.error(f"Run {run.id} failed ({run.error_type}): {run.error}")
        self._finalize(run)
        return run

    def abandon_leftovers(self, tier: str) -> List[BackupRun]:
        """
        Fail runs of ``tier`` left PENDING or RUNNING by a process that died.

        Only call this while holding the tier lock: no live run of the tier
        can exist then.
        """
        leftovers = list(
            BackupRun.objects.filter(tier=tier, status__in=[BackupRun.PENDING, BackupRun.RUNNING])
        )
        for run in leftovers:
            logger.warning(f"Run {run.id} ({tier}) was left {run.status} by a process that exited")
            self.fail(run, RunAbandoned(f"{tier} run was interrupted before it finished"))
        return leftovers

    def current_runs(self) -> List[BackupRun]:
        return list(
            BackupRun.objects.filter(status__in=[BackupRun.PENDING, BackupRun.RUNNING]).order_by(
                "-started_at"
            )
        )

    def history(self, limit: Optional[int] = None) -> List[BackupRun]:
        """Terminal runs, most recent first."""
        if limit is None:
            limit = self.history_limit
        return list(
            BackupRun.objects.filter(status__in=BackupRun.TERMINAL_STATUSES)
            .select_related("backup")
            .order_by("-started_at", "-id")[:limit]
        )

    def notify_restore(self, restore_log: BackupRestoreLog, error: Optional[BaseException] = None):
        """Emit the single event for a finished restore; ``error`` is the exception that failed it."""
        duration_ms = None
        if restore_log.completed_at:
            duration_ms = int((restore_log.completed_at - restore_log.started_at).total_seconds() * 1000)
        event = RunEvent(
            operation="restore",
            tier=restore_log.backup.tier,
            run_id=str(restore_log.id),
            status=restore_log.status,
            duration_ms=duration_ms,
            artifact_id=restore_log.backup_id,
            size_bytes=restore_log.backup.size_bytes,
            error=restore_log.error_message,
            error_type=self._restore_error_type(restore_log, error),
        )
        self._deliver(event)

    @staticmethod
    def _restore_error_type(restore_log: BackupRestoreLog, error: Optional[BaseException]) -> Optional[str]:
        if not restore_log.is_failed():
            return None
        return error_type(error) if error is not None else "RestoreFailure"

    def build_event(self, run: BackupRun) -> RunEvent:
        backup = run.backup
        return RunEvent(
            operation="backup",
            tier=run.tier,
            run_id=str(run.id),
            status=run.status,
            duration_ms=run.duration_ms,
            artifact_id=backup.id if backup and run.status == BackupRun.COMPLETED else None,
            size_bytes=backup.size_bytes if backup and run.status == BackupRun.COMPLETED else None,
            error=run.error,
            error_type=run.error_type or None,
            degraded=run.degraded,
            replication_errors=list(run.replication_errors or []),
        )

    def _finalize(self, run: BackupRun):
        # Claim the notification atomically so it is sent at most once
        with transaction.atomic():
            claimed = BackupRun.objects.filter(pk=run.pk, notified_at__isnull=True).update(
                notified_at=timezone.now()
            )
        if claimed:
            self._deliver(self.build_event(run))
        self.prune()

    def _deliver(self, event: RunEvent):
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.error(f"Notification for run {event.run_id} failed: {e}")

    def prune(self) -> int:
        """Delete terminal runs beyond the history limit; returns the number removed."""
        stale_ids = list(
            BackupRun.objects.filter(status__in=BackupRun.TERMINAL_STATUSES)
            .order_by("-started_at", "-id")
            .values_list("id", flat=True)[self.history_limit :]
        )
        if not stale_ids:
            return 0
        deleted, _ = BackupRun.objects.filter(id__in=stale_ids).delete()
        logger.debug(f"Pruned {deleted} run(s) beyond history limit {self.history_limit}")
        return deleted

    @staticmethod
    def _check_not_terminal(run: BackupRun, target: str):
        if run.is_terminal():
            raise InvalidTransition(f"Run {run.id} is {run.status}; cannot move to {target}")
