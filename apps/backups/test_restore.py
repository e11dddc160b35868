"""
Tests for restoring backups into a target database.

The destructive import (mongorestore --drop) must never start unless every
check on the artifact passed.
"""

import dataclasses
import io
import tarfile
from datetime import timedelta

from django.test import override_settings
from django.utils import timezone

import pytest
from cryptography.fernet import Fernet

from apps.backups.conf import Destination, validate_backup_settings
from apps.backups.encryption import calculate_checksum
from apps.backups.exceptions import (
    BackupTimeout,
    ConfirmationRequired,
    IntegrityError,
    RestoreFailure,
    RunInProgress,
)
from apps.backups.locks import tier_lock_name
from apps.backups.models import Backup, BackupRestoreLog
from apps.backups.restore import resolve_backup

S3 = Destination(name="s3", provider="s3", bucket="primary-bucket")


def tar_bytes(files):
    """Build a tar.gz in memory from ``{arcname: bytes}``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def completed_backup(service):
    run = service.run_backup("daily")
    assert run.status == "COMPLETED", run.error
    return run.backup


@pytest.mark.django_db
class TestResolveBackup:
    def test_by_id_filename_and_path(self, make_backup):
        backup = make_backup(tier="weekly")

        assert resolve_backup(backup.id) == backup
        assert resolve_backup(backup.filename) == backup
        assert resolve_backup(f"/var/backups/docstore/weekly/{backup.filename}") == backup

    def test_latest(self, make_backup):
        older = make_backup(tier="daily", created_at=timezone.now() - timedelta(days=1))
        newer = make_backup(tier="monthly")
        make_backup(tier="daily", status=Backup.FAILED, with_file=False)

        assert resolve_backup("latest") == newer
        assert resolve_backup("latest:daily") == older

    def test_nothing_matches(self, db):
        with pytest.raises(IntegrityError):
            resolve_backup("latest")
        with pytest.raises(IntegrityError):
            resolve_backup("20200101T000000000000Z-000000")
        with pytest.raises(IntegrityError):
            resolve_backup("")


@pytest.mark.django_db
class TestRestore:
    def test_round_trip(self, service, completed_backup, fake_runner, notifier, backup_settings):
        restore_log = service.restore(completed_backup.id, confirm=True, initiated_by="ops")

        assert restore_log.status == BackupRestoreLog.COMPLETED
        assert restore_log.initiated_by == "ops"
        assert "secret" not in restore_log.target

        (cmd,) = fake_runner.commands("mongorestore")
        assert cmd[1] == f"--uri={backup_settings.restore_target_uri}"
        assert "--drop" in cmd
        assert "--oplogReplay" not in cmd
        assert "--numParallelCollections=4" in cmd
        assert fake_runner.restored_trees[0] == [
            "testdb/orders.bson",
            "testdb/orders.metadata.json",
            "testdb/users.bson",
            "testdb/users.metadata.json",
        ]

        assert list(service.store.temp_dir.iterdir()) == []
        assert service.guard.active_locks() == []
        assert notifier.events[-1].event_name == "restore_completed"
        assert notifier.events[-1].artifact_id == completed_backup.id

    def test_explicit_target(self, service, completed_backup, fake_runner):
        service.restore("latest", confirm=True, target_uri="mongodb://localhost:27017/staging")

        (cmd,) = fake_runner.commands("mongorestore")
        assert cmd[1] == "--uri=mongodb://localhost:27017/staging"

    def test_confirmation_required(self, service, completed_backup, fake_runner):
        with pytest.raises(ConfirmationRequired):
            service.restore(completed_backup.id, confirm=False)

        assert fake_runner.commands("mongorestore") == []
        assert not BackupRestoreLog.objects.exists()

    def test_zero_size_backup_is_rejected(self, service, make_backup, fake_runner, notifier):
        backup = make_backup(tier="daily", with_file=False, size_bytes=0, local_path="daily/x.tar.gz")

        with pytest.raises(IntegrityError, match="size of 0"):
            service.restore(backup.id, confirm=True)

        assert fake_runner.commands("mongorestore") == []
        restore_log = BackupRestoreLog.objects.get()
        assert restore_log.status == BackupRestoreLog.FAILED
        assert notifier.events[-1].event_name == "restore_failed"
        assert notifier.events[-1].error_type == "IntegrityError"

    def test_failed_backup_is_rejected(self, service, make_backup, fake_runner):
        backup = make_backup(tier="daily", status=Backup.FAILED, with_file=False)

        with pytest.raises(IntegrityError, match="not COMPLETED"):
            service.restore(backup.id, confirm=True)

        assert fake_runner.commands("mongorestore") == []

    def test_corrupted_artifact_is_rejected(self, service, completed_backup, fake_runner):
        path = service.store.absolute_path(completed_backup.local_path)
        data = bytearray(path.read_bytes())
        data[len(data) // 2] ^= 0xFF
        path.write_bytes(bytes(data))

        with pytest.raises(IntegrityError, match="Checksum mismatch"):
            service.restore(completed_backup.id, confirm=True)

        assert fake_runner.commands("mongorestore") == []

    def test_truncated_artifact_is_rejected(self, service, completed_backup, fake_runner):
        path = service.store.absolute_path(completed_backup.local_path)
        path.write_bytes(path.read_bytes()[:-100])

        with pytest.raises(IntegrityError, match="expected"):
            service.restore(completed_backup.id, confirm=True)

        assert fake_runner.commands("mongorestore") == []

    def test_unreadable_archive_is_rejected(self, service, make_backup, fake_runner):
        backup = make_backup(tier="daily", content=b"not a tarball at all")

        with pytest.raises(IntegrityError):
            service.restore(backup.id, confirm=True)

        assert fake_runner.commands("mongorestore") == []

    def test_archive_without_database_dumps_is_rejected(self, service, make_backup, fake_runner):
        backup = make_backup(tier="daily", content=tar_bytes({"dump/README.txt": b"hello"}))

        with pytest.raises(IntegrityError, match="no database dumps"):
            service.restore(backup.id, confirm=True)

        assert fake_runner.commands("mongorestore") == []

    def test_missing_artifact_without_remote_copy(self, service, completed_backup, fake_runner):
        service.store.absolute_path(completed_backup.local_path).unlink()

        with pytest.raises(IntegrityError, match="missing"):
            service.restore(completed_backup.id, confirm=True)

        assert fake_runner.commands("mongorestore") == []

    def test_rejected_while_backup_runs(self, service, completed_backup, fake_runner):
        path = service.store.absolute_path(completed_backup.local_path)
        checksum_before = calculate_checksum(path)
        running = service.guard.lock(tier_lock_name("weekly")).acquire()

        try:
            with pytest.raises(RunInProgress):
                service.restore(completed_backup.id, confirm=True)
        finally:
            running.release()

        assert fake_runner.commands("mongorestore") == []
        assert not BackupRestoreLog.objects.exists()
        assert calculate_checksum(path) == checksum_before
        completed_backup.refresh_from_db()
        assert completed_backup.local_path

    def test_import_failure(self, service, completed_backup, fake_runner, notifier):
        fake_runner.restore_returncode = 1

        with pytest.raises(RestoreFailure, match="partially restored"):
            service.restore(completed_backup.id, confirm=True)

        restore_log = BackupRestoreLog.objects.get()
        assert restore_log.status == BackupRestoreLog.FAILED
        assert "duplicate key" in restore_log.error_message
        assert notifier.events[-1].event_name == "restore_failed"
        assert notifier.events[-1].error_type == "RestoreFailure"
        assert list(service.store.temp_dir.iterdir()) == []

    def test_import_timeout(self, service, completed_backup, fake_runner, notifier):
        fake_runner.restore_timeout = True

        with pytest.raises(BackupTimeout, match="partially restored") as exc_info:
            service.restore(completed_backup.id, confirm=True)

        assert exc_info.value.phase == "restore"
        assert BackupRestoreLog.objects.get().status == BackupRestoreLog.FAILED
        assert notifier.events[-1].error_type == "Timeout"

    def test_falls_back_to_remote_copy(
        self, make_service, backup_settings, fake_runner, remote_stores
    ):
        service = make_service(conf=dataclasses.replace(backup_settings, destinations=(S3,)))
        backup = service.run_backup("daily").backup
        service.store.absolute_path(backup.local_path).unlink()

        restore_log = service.restore(backup.id, confirm=True)

        assert restore_log.status == BackupRestoreLog.COMPLETED
        assert remote_stores["s3"].downloads == [f"backups/daily/{backup.filename}"]
        assert len(fake_runner.commands("mongorestore")) == 1

    def test_encrypted_round_trip(self, settings, make_service, fake_runner):
        settings.BACKUP_ENCRYPTION_ENABLED = True
        settings.BACKUP_ENCRYPTION_KEY = Fernet.generate_key().decode()
        service = make_service(conf=validate_backup_settings())

        backup = service.run_backup("monthly").backup
        assert backup.encrypted
        assert backup.local_path.endswith(".tar.gz.enc")

        service.restore(backup.id, confirm=True)

        assert "testdb/users.bson" in fake_runner.restored_trees[0]

    def test_encrypted_artifact_with_wrong_key(self, settings, make_service, fake_runner):
        settings.BACKUP_ENCRYPTION_ENABLED = True
        settings.BACKUP_ENCRYPTION_KEY = Fernet.generate_key().decode()
        backup = make_service(conf=validate_backup_settings()).run_backup("daily").backup

        with override_settings(BACKUP_ENCRYPTION_KEY=Fernet.generate_key().decode()):
            other = make_service(conf=validate_backup_settings())
            with pytest.raises(IntegrityError, match="Cannot decrypt"):
                other.restore(backup.id, confirm=True)

        assert fake_runner.commands("mongorestore") == []

    def test_point_in_time_backup_replays_oplog(self, make_service, backup_settings, fake_runner):
        conf = dataclasses.replace(backup_settings, point_in_time=True, excluded_collections=frozenset())
        service = make_service(conf=conf)

        backup = service.run_backup("daily").backup
        assert "--oplog" in fake_runner.commands("mongodump")[0]
        assert backup.metadata["point_in_time"] is True

        service.restore(backup.id, confirm=True)

        assert "--oplogReplay" in fake_runner.commands("mongorestore")[0]
        assert "oplog.bson" in fake_runner.restored_trees[0]

    def test_snapshot_before_restore(self, service, completed_backup, fake_runner, backup_settings):
        restore_log = service.restore(completed_backup.id, confirm=True, snapshot=True)

        snapshot = restore_log.snapshot
        assert snapshot is not None
        assert snapshot.tier == Backup.MANUAL
        assert snapshot.is_completed()
        assert service.store.exists(snapshot.local_path)

        dumps = fake_runner.commands("mongodump")
        assert dumps[-1][1] == f"--uri={backup_settings.restore_target_uri}"
        # The snapshot is taken before the target is dropped
        assert fake_runner.calls.index(dumps[-1]) < fake_runner.calls.index(
            fake_runner.commands("mongorestore")[0]
        )

    def test_failed_snapshot_leaves_target_untouched(self, service, completed_backup, fake_runner):
        fake_runner.dump_returncode = 1

        with pytest.raises(RestoreFailure, match="target database was not modified"):
            service.restore(completed_backup.id, confirm=True, snapshot=True)

        assert fake_runner.commands("mongorestore") == []
        assert BackupRestoreLog.objects.get().status == BackupRestoreLog.FAILED


class TestBuildCommand:
    def test_command(self, service, tmp_path):
        cmd = service.restore_executor.build_command("mongodb://h/db", tmp_path, point_in_time=True)

        assert cmd == [
            "mongorestore",
            "--uri=mongodb://h/db",
            "--drop",
            f"--dir={tmp_path}",
            "--oplogReplay",
            "--numParallelCollections=4",
        ]
