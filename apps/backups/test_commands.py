"""
Tests for the ``backup`` management command.
"""

from datetime import timedelta
from io import StringIO
from unittest.mock import MagicMock, patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.utils import timezone

import pytest

from apps.backups.locks import tier_lock_name
from apps.backups.management.commands.backup import RESTORE_USAGE, format_age, format_size
from apps.backups.models import Backup, BackupRestoreLog, BackupRun


@pytest.fixture
def cli_service(service):
    with patch(
        "apps.backups.management.commands.backup.BackupService.from_settings", return_value=service
    ):
        yield service


def run_command(*args):
    out = StringIO()
    err = StringIO()
    call_command("backup", *args, stdout=out, stderr=err)
    return out.getvalue(), err.getvalue()


@pytest.mark.django_db
class TestCreateCommand:
    def test_create(self, cli_service):
        out, _ = run_command("create", "--tier", "daily")

        backup = Backup.objects.get()
        assert backup.tier == "daily"
        assert f"Backup {backup.id} completed" in out
        assert BackupRun.objects.get().trigger == BackupRun.MANUAL

    def test_defaults_to_manual_tier(self, cli_service):
        run_command("create")

        assert Backup.objects.get().tier == "manual"

    def test_failure_exits_nonzero(self, cli_service, fake_runner):
        fake_runner.dump_returncode = 1

        with pytest.raises(CommandError, match="Backup failed \\(DumpFailure\\)"):
            run_command("create", "--tier", "weekly")

    def test_rejected_while_tier_runs(self, cli_service):
        running = cli_service.guard.lock(tier_lock_name("manual")).acquire()
        try:
            with pytest.raises(CommandError, match="Backup rejected"):
                run_command("create")
        finally:
            running.release()

    def test_async_queues_task(self, cli_service):
        with patch("apps.backups.tasks.manual_backup.delay", return_value=MagicMock(id="task-1")) as delay:
            out, _ = run_command("create", "--tier", "monthly", "--async")

        assert delay.call_args.args == ("monthly",)
        assert "Monthly backup task queued: task-1" in out
        assert not Backup.objects.exists()


@pytest.mark.django_db
class TestListCommand:
    def test_empty(self, cli_service):
        out, _ = run_command("list")

        assert "No backups found." in out

    def test_lists_newest_first(self, cli_service, make_backup):
        old = make_backup(tier="daily", created_at=timezone.now() - timedelta(days=3))
        new = make_backup(tier="weekly")

        out, _ = run_command("list")

        assert out.index(new.id) < out.index(old.id)
        assert "2 backup(s)" in out

    def test_tier_filter(self, cli_service, make_backup):
        daily = make_backup(tier="daily")
        weekly = make_backup(tier="weekly")

        out, _ = run_command("list", "--tier", "weekly")

        assert weekly.id in out
        assert daily.id not in out


@pytest.mark.django_db
class TestRestoreCommand:
    def test_missing_artifact_argument(self, cli_service):
        with pytest.raises(CommandError) as exc_info:
            run_command("restore")

        assert str(exc_info.value) == RESTORE_USAGE

    def test_requires_confirm(self, cli_service, fake_runner, make_backup):
        backup = make_backup(tier="daily")

        with pytest.raises(CommandError, match="not confirmed"):
            call_command("backup", "restore", backup.id, stdout=StringIO(), stderr=StringIO())

        assert fake_runner.commands("mongorestore") == []
        assert not BackupRestoreLog.objects.exists()

    def test_restore(self, cli_service, fake_runner):
        backup = cli_service.run_backup("daily").backup

        out, _ = run_command("restore", "latest", "--confirm")

        assert f"of {backup.id} into" in out
        assert len(fake_runner.commands("mongorestore")) == 1

    def test_integrity_failure(self, cli_service, fake_runner):
        backup = cli_service.run_backup("daily").backup
        cli_service.store.absolute_path(backup.local_path).write_bytes(b"garbage")

        with pytest.raises(CommandError, match="Restore failed \\(IntegrityError\\)"):
            run_command("restore", backup.id, "--confirm")

        assert fake_runner.commands("mongorestore") == []

    def test_unknown_artifact(self, cli_service):
        with pytest.raises(CommandError, match="Restore failed"):
            run_command("restore", "backup_daily_nope.tar.gz", "--confirm")


@pytest.mark.django_db
class TestCleanupCommand:
    def test_cleanup(self, cli_service):
        out, _ = run_command("cleanup", "--tier", "daily")

        assert "daily: kept 0/7" in out
        assert "Purged 0 stale scratch entries" in out
        assert "Cleanup completed" in out

    def test_busy_tier(self, cli_service):
        running = cli_service.guard.lock(tier_lock_name("daily")).acquire()
        try:
            with pytest.raises(CommandError, match="Cleanup rejected"):
                run_command("cleanup", "--tier", "daily")

            out, _ = run_command("cleanup")
        finally:
            running.release()

        assert "daily: skipped, backup in progress" in out


@pytest.mark.django_db
class TestStatusVerifyCheckCommands:
    def test_status(self, cli_service, fake_runner):
        cli_service.run_backup("daily")
        fake_runner.dump_returncode = 1
        cli_service.run_backup("weekly")

        out, _ = run_command("status", "--limit", "5")

        assert "Current runs:\n  none" in out
        assert "weekly   FAILED    DumpFailure" in out
        assert "daily    COMPLETED" in out

    def test_verify(self, cli_service):
        good = cli_service.run_backup("daily").backup

        out, _ = run_command("verify")
        assert f"OK      {good.id}" in out

        bad = cli_service.run_backup("weekly").backup
        cli_service.store.absolute_path(bad.local_path).unlink()

        with pytest.raises(CommandError, match="1 of 2"):
            run_command("verify")

    def test_verify_without_artifacts(self, cli_service):
        out, _ = run_command("verify")

        assert "No local artifacts to verify." in out

    def test_check(self, cli_service, fake_runner):
        out, _ = run_command("check")
        assert "OK      configuration" in out
        assert "OK      mongodump: mongodump version: 100.9.4" in out

        fake_runner.missing.add("mongodump")
        with pytest.raises(CommandError, match="1 check\\(s\\) failed"):
            run_command("check")

    def test_invalid_configuration(self, settings, backup_root):
        settings.MONGODB_URI = ""

        with pytest.raises(CommandError, match="MONGODB_URI is required"):
            run_command("check")


class TestFormatting:
    def test_format_size(self):
        assert format_size(512) == "512.0 B"
        assert format_size(2048) == "2.0 KB"
        assert format_size(5 * 1024 ** 3) == "5.0 GB"

    def test_format_age(self):
        now = timezone.now()
        assert format_age(now - timedelta(minutes=5), now) == "5m"
        assert format_age(now - timedelta(hours=3), now) == "3h"
        assert format_age(now - timedelta(days=2), now) == "2d"
