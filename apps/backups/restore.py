"""
Restore of a backup artifact into a target database.

A restore is destructive: mongorestore runs with ``--drop``. Every check on
the artifact happens first, and any failed check aborts with
``IntegrityError`` before the import tool is started. A restore holds the
restore lock and every tier lock, so no backup runs while it executes.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import Callable, List, Optional, Sequence
from urllib.parse import urlsplit

from django.utils import timezone

from .archive import extract_archive
from .conf import Destination, mask_uri
from .encryption import EncryptionError, calculate_checksum, decrypt_file
from .exceptions import (
    BackupError,
    BackupTimeout,
    CompressionFailure,
    ConfirmationRequired,
    IntegrityError,
    RestoreFailure,
)
from .locks import ExclusivityGuard
from .models import Backup, BackupRestoreLog, BackupRun
from .process import ProcessRunner, SubprocessRunner
from .storage import LocalArtifactStore, RemoteStorage, get_remote_storage
from .tracker import RunTracker

logger = logging.getLogger(__name__)

ARTIFACT_NAME_RE = re.compile(r"^backup_(?P<tier>[a-z]+)_(?P<id>.+?)\.tar\.gz(?:\.enc)?$")


def resolve_backup(reference: str) -> Backup:
    """
    Find the backup a user refers to.

    ``reference`` may be an artifact id, an artifact file name (or path),
    ``latest`` or ``latest:<tier>``.

    Raises:
        IntegrityError: if nothing matches
    """
    reference = (reference or "").strip()
    if not reference:
        raise IntegrityError("No backup specified")

    if reference == "latest" or reference.startswith("latest:"):
        tier = reference.partition(":")[2] or None
        qs = Backup.objects.completed()
        if tier:
            qs = qs.filter(tier=tier)
        backup = qs.newest_first().first()
        if backup is None:
            raise IntegrityError(f"No completed backup found for {reference!r}")
        return backup

    name = Path(reference).name
    match = ARTIFACT_NAME_RE.match(name)
    backup_id = match.group("id") if match else name

    try:
        return Backup.objects.get(pk=backup_id)
    except Backup.DoesNotExist:
        raise IntegrityError(f"No backup found for {reference!r}")


def _object_key(location_uri: str) -> str:
    return urlsplit(location_uri).path.lstrip("/")


class RestoreExecutor:
    def __init__(
        self,
        store: LocalArtifactStore,
        guard: ExclusivityGuard,
        tracker: RunTracker,
        runner: Optional[ProcessRunner] = None,
        binary: str = "mongorestore",
        timeout: float = 7200,
        parallelism: Optional[int] = None,
        encryption_key: Optional[str] = None,
        destinations: Sequence[Destination] = (),
        storage_factory: Optional[Callable[[Destination], RemoteStorage]] = None,
        snapshot_fn: Optional[Callable[[str], BackupRun]] = None,
    ):
        self.store = store
        self.guard = guard
        self.tracker = tracker
        self.runner = runner or SubprocessRunner()
        self.binary = binary
        self.timeout = timeout
        self.parallelism = parallelism
        self.encryption_key = encryption_key
        self.destinations = {destination.name: destination for destination in destinations}
        self.storage_factory = storage_factory or get_remote_storage
        self.snapshot_fn = snapshot_fn

    def build_command(self, target_uri: str, dump_dir: Path, point_in_time: bool = False) -> List[str]:
        cmd = [self.binary, f"--uri={target_uri}", "--drop", f"--dir={dump_dir}"]
        if point_in_time:
            cmd.append("--oplogReplay")
        if self.parallelism:
            cmd.append(f"--numParallelCollections={self.parallelism}")
        return cmd

    def check_available(self) -> str:
        """
        Return the tool's version banner.

        Raises:
            RestoreFailure: if the tool is missing or not runnable
        """
        result = self.runner.run([self.binary, "--version"], timeout=30)
        if not result.ok:
            raise RestoreFailure(f"{self.binary} is not available: {result.tail()}")
        lines = result.stdout.strip().splitlines()
        return lines[0] if lines else self.binary

    def restore(
        self,
        reference: str,
        confirm: bool,
        target_uri: str,
        snapshot: bool = False,
        initiated_by: str = "",
    ) -> BackupRestoreLog:
        """
        Replace the target database's contents with a backup.

        Raises:
            ConfirmationRequired: if ``confirm`` is false
            RunInProgress: if a backup or another restore is running
            IntegrityError: if the artifact fails a precondition
            RestoreFailure: if the snapshot or the import tool fails
            BackupTimeout: if the import exceeds the restore timeout
        """
        if not confirm:
            raise ConfirmationRequired(
                "Restore drops existing collections in the target database; confirmation is required"
            )

        backup = resolve_backup(reference)

        with self.guard.restore():
            restore_log = BackupRestoreLog.objects.create(
                backup=backup,
                target=mask_uri(target_uri),
                initiated_by=initiated_by,
            )
            scratch_dir = self.store.scratch_path(f"restore_{restore_log.id}")
            logger.info(f"Restore {restore_log.id}: backup {backup.id} -> {mask_uri(target_uri)}")

            try:
                dump_dir = self.prepare(backup, scratch_dir)

                if snapshot:
                    restore_log.snapshot = self._take_snapshot(target_uri)
                    restore_log.save(update_fields=["snapshot"])

                self._run_import(target_uri, dump_dir, bool(backup.metadata.get("point_in_time")))

            except BackupError as e:
                self._finish(restore_log, BackupRestoreLog.FAILED, str(e), error=e)
                raise
            except Exception as e:
                self._finish(restore_log, BackupRestoreLog.FAILED, f"{type(e).__name__}: {e}", error=e)
                raise
            else:
                self._finish(restore_log, BackupRestoreLog.COMPLETED)
            finally:
                shutil.rmtree(scratch_dir, ignore_errors=True)

        return restore_log

    def prepare(self, backup: Backup, scratch_dir: Path) -> Path:
        """
        Check every precondition and extract the dump.

        Returns:
            Path of the extracted dump directory

        Raises:
            IntegrityError: on the first failed precondition
        """
        if backup.status != Backup.COMPLETED:
            raise IntegrityError(f"Backup {backup.id} is {backup.status}, not COMPLETED")
        if not backup.size_bytes or backup.size_bytes <= 0:
            raise IntegrityError(f"Backup {backup.id} has a recorded size of {backup.size_bytes} bytes")

        scratch_dir.mkdir(parents=True, exist_ok=True)
        artifact = self._locate_artifact(backup, scratch_dir)

        actual_size = artifact.stat().st_size
        if actual_size != backup.size_bytes:
            raise IntegrityError(
                f"Artifact {artifact.name} is {actual_size} bytes, expected {backup.size_bytes}"
            )

        if backup.checksum:
            actual_checksum = calculate_checksum(artifact)
            if actual_checksum != backup.checksum:
                raise IntegrityError(
                    f"Checksum mismatch for {artifact.name}: expected {backup.checksum}, got {actual_checksum}"
                )

        archive_path = artifact
        if backup.encrypted:
            archive_path = scratch_dir / "artifact.tar.gz"
            try:
                decrypt_file(artifact, archive_path, key=self.encryption_key)
            except (EncryptionError, ValueError) as e:
                raise IntegrityError(f"Cannot decrypt {artifact.name}: {e}") from e

        extracted = scratch_dir / "extracted"
        try:
            extract_archive(archive_path, extracted)
        except CompressionFailure as e:
            raise IntegrityError(str(e)) from e

        return self._validate_dump_tree(extracted, artifact.name)

    def _locate_artifact(self, backup: Backup, scratch_dir: Path) -> Path:
        if backup.local_path and self.store.exists(backup.local_path):
            return self.store.absolute_path(backup.local_path)

        for remote_copy in backup.remote_copies.all():
            destination = self.destinations.get(remote_copy.destination)
            if destination is None:
                logger.warning(
                    f"Remote copy on {remote_copy.destination} skipped: destination not configured"
                )
                continue
            downloaded = scratch_dir / backup.filename
            storage = self.storage_factory(destination)
            if storage.download(_object_key(remote_copy.location_uri), downloaded):
                logger.info(f"Using remote copy {remote_copy.location_uri} of backup {backup.id}")
                return downloaded

        raise IntegrityError(f"Artifact file for backup {backup.id} is missing")

    @staticmethod
    def _validate_dump_tree(extracted: Path, artifact_name: str) -> Path:
        entries = list(extracted.iterdir())
        if len(entries) != 1 or not entries[0].is_dir():
            raise IntegrityError(
                f"{artifact_name} must contain exactly one dump directory, found {len(entries)} entries"
            )
        dump_dir = entries[0]

        databases = [
            path for path in dump_dir.iterdir() if path.is_dir() and any(path.glob("*.bson"))
        ]
        if not databases:
            raise IntegrityError(f"{artifact_name} contains no database dumps")

        logger.debug(f"Dump in {artifact_name} holds {len(databases)} database(s)")
        return dump_dir

    def _take_snapshot(self, target_uri: str) -> Backup:
        if self.snapshot_fn is None:
            raise RestoreFailure("Pre-restore snapshot requested but no snapshot pipeline is available")

        logger.info(f"Taking pre-restore snapshot of {mask_uri(target_uri)}")
        run = self.snapshot_fn(target_uri)
        if run.status != BackupRun.COMPLETED:
            raise RestoreFailure(
                f"Pre-restore snapshot failed ({run.error}); target database was not modified"
            )
        return run.backup

    def _run_import(self, target_uri: str, dump_dir: Path, point_in_time: bool):
        cmd = self.build_command(target_uri, dump_dir, point_in_time=point_in_time)
        logger.info(f"Starting mongorestore into {mask_uri(target_uri)}")

        try:
            result = self.runner.run(cmd, timeout=self.timeout, phase="restore")
        except BackupTimeout as e:
            raise BackupTimeout(
                f"{e}; the target database may be partially restored",
                phase="restore",
                seconds=self.timeout,
            ) from e

        if not result.ok:
            raise RestoreFailure(
                f"mongorestore exited with code {result.returncode}; "
                f"the target database may be partially restored: {result.tail()}"
            )
        logger.info(f"mongorestore completed in {result.duration_seconds:.1f}s")

    def _finish(
        self,
        restore_log: BackupRestoreLog,
        status: str,
        error_message: Optional[str] = None,
        error: Optional[BaseException] = None,
    ):
        restore_log.status = status
        restore_log.completed_at = timezone.now()
        restore_log.duration_seconds = int((restore_log.completed_at - restore_log.started_at).total_seconds())
        restore_log.error_message = error_message
        restore_log.save(update_fields=["status", "completed_at", "duration_seconds", "error_message"])

        if status == BackupRestoreLog.COMPLETED:
            logger.info(f"Restore {restore_log.id} completed in {restore_log.duration_seconds}s")
        else:
            logger.error(f"Restore {restore_log.id} failed: {error_message}")
        self.tracker.notify_restore(restore_log, error)
