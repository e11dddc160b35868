"""
Tests for the Celery backup tasks.
"""

import os
import time
from unittest.mock import patch

import pytest

from apps.backups.locks import RESTORE_LOCK, tier_lock_name
from apps.backups.models import Backup, BackupRun
from apps.backups.tasks import enforce_retention, manual_backup, purge_stale_temp, scheduled_backup


@pytest.fixture
def task_service(service):
    with patch("apps.backups.tasks.BackupService.from_settings", return_value=service):
        yield service


@pytest.mark.django_db
class TestScheduledBackup:
    def test_runs_backup(self, task_service):
        result = scheduled_backup("daily")

        run = BackupRun.objects.get()
        assert run.trigger == BackupRun.SCHEDULED
        assert result == {
            "run_id": str(run.id),
            "tier": "daily",
            "status": BackupRun.COMPLETED,
            "backup_id": run.backup_id,
            "error": None,
            "degraded": False,
        }

    def test_failed_run_is_reported(self, task_service, fake_runner):
        fake_runner.dump_returncode = 1

        result = scheduled_backup("weekly")

        assert result["status"] == BackupRun.FAILED
        assert "exited with code 1" in result["error"]

    def test_skipped_when_tier_is_running(self, task_service):
        running = task_service.guard.lock(tier_lock_name("daily")).acquire()
        try:
            result = scheduled_backup("daily")
        finally:
            running.release()

        assert result["status"] == "SKIPPED"
        assert not BackupRun.objects.exists()

    def test_skipped_during_restore(self, task_service):
        restore = task_service.guard.lock(RESTORE_LOCK).acquire()
        try:
            result = scheduled_backup("monthly")
        finally:
            restore.release()

        assert result["status"] == "SKIPPED"
        assert "restore" in result["reason"]

    def test_queued_through_celery(self, task_service):
        result = scheduled_backup.delay("yearly").get()

        assert result["status"] == BackupRun.COMPLETED
        assert Backup.objects.get().tier == "yearly"


@pytest.mark.django_db
class TestManualBackup:
    def test_runs_backup(self, task_service):
        result = manual_backup("manual", initiated_by="ops")

        assert result["status"] == BackupRun.COMPLETED
        assert BackupRun.objects.get().trigger == BackupRun.MANUAL

    def test_rejected_when_tier_is_running(self, task_service):
        running = task_service.guard.lock(tier_lock_name("manual")).acquire()
        try:
            result = manual_backup()
        finally:
            running.release()

        assert result["status"] == "REJECTED"


@pytest.mark.django_db
class TestMaintenanceTasks:
    def test_enforce_retention(self, task_service, make_backup):
        make_backup(tier="daily")

        result = enforce_retention("daily")

        assert result["busy"] == []
        assert result["results"][0]["tier"] == "daily"
        assert len(result["results"][0]["retained"]) == 1

    def test_purge_stale_temp(self, task_service):
        stale = task_service.store.scratch_path("archive_crashed.partial")
        stale.write_bytes(b"x")
        long_ago = time.time() - task_service.stale_temp_seconds - 60
        os.utime(stale, (long_ago, long_ago))
        fresh = task_service.store.scratch_path("dump_running")
        fresh.mkdir()

        assert purge_stale_temp() == 1
        assert not stale.exists()
        assert fresh.exists()
