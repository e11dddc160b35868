"""
Service layer for backup operations.

``BackupService`` wires the pipeline components together and is the single
entry point used by the Celery tasks and the ``backup`` management command:

- Running a backup: lock -> dump -> archive -> replicate -> retain -> notify
- Listing backups
- Forcing retention and scratch cleanup
- Restoring, verifying and reporting status
"""

import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .archive import Archiver
from .conf import TIERS, BackupSettings, Destination, mask_uri, validate_backup_settings
from .dump import DumpExecutor, DumpOptions
from .encryption import verify_checksum
from .exceptions import BackupError, CompressionFailure, RunInProgress
from .locks import ExclusivityGuard
from .models import Backup, BackupRestoreLog, BackupRun
from .notifiers import Notifier
from .process import ProcessRunner, SubprocessRunner
from .replication import Replicator
from .restore import RestoreExecutor, resolve_backup
from .retention import RetentionManager
from .storage import LocalArtifactStore, RemoteStorage
from .tracker import RunTracker

logger = logging.getLogger(__name__)


class BackupService:
    """Service for managing backup operations."""

    def __init__(
        self,
        conf: BackupSettings,
        runner: Optional[ProcessRunner] = None,
        notifier: Optional[Notifier] = None,
        storage_factory: Optional[Callable[[Destination], RemoteStorage]] = None,
        owner: str = "",
    ):
        self.conf = conf
        self.runner = runner or SubprocessRunner()
        self.store = LocalArtifactStore(conf.local_path)
        self.guard = ExclusivityGuard(self.store.locks_dir, owner=owner)
        self.tracker = RunTracker(notifier=notifier, history_limit=conf.run_history_limit)

        encryption_key = conf.encryption_key if conf.encryption_enabled else None
        self.dump_executor = DumpExecutor(
            runner=self.runner, binary=conf.dump_binary, timeout=conf.timeout_for("dump")
        )
        self.archiver = Archiver(timeout=conf.timeout_for("archive"), encryption_key=encryption_key)
        self.replicator = Replicator(
            conf.destinations, timeout=conf.timeout_for("upload"), storage_factory=storage_factory
        )
        self.retention = RetentionManager(self.store, conf.retention)
        self.restore_executor = RestoreExecutor(
            store=self.store,
            guard=self.guard,
            tracker=self.tracker,
            runner=self.runner,
            binary=conf.restore_binary,
            timeout=conf.timeout_for("restore"),
            parallelism=conf.parallelism,
            encryption_key=encryption_key,
            destinations=conf.destinations,
            storage_factory=storage_factory,
            snapshot_fn=self._snapshot,
        )

    @classmethod
    def from_settings(cls, **kwargs) -> "BackupService":
        return cls(validate_backup_settings(), **kwargs)

    @property
    def dump_options(self) -> DumpOptions:
        return DumpOptions(
            excluded_collections=self.conf.excluded_collections,
            point_in_time=self.conf.point_in_time,
            parallelism=self.conf.parallelism,
        )

    @property
    def stale_temp_seconds(self) -> int:
        # Anything in temp older than the longest possible operation is an orphan
        return max(self.conf.pipeline_budget_seconds, self.conf.timeout_for("restore"))

    def run_backup(self, tier: str, trigger: str = BackupRun.MANUAL) -> BackupRun:
        """
        Run one backup of ``tier``.

        Returns:
            The terminal run. Pipeline failures are recorded on it, not raised.

        Raises:
            RunInProgress: if the tier is already running or a restore is in progress
            ValueError: if the tier is unknown
        """
        if tier not in TIERS:
            raise ValueError(f"Unknown backup tier: {tier}")

        with self.guard.backup(tier):
            return self._execute(tier, trigger, self.conf.mongodb_uri)

    def _snapshot(self, target_uri: str) -> BackupRun:
        # Called by the restore executor, which already holds every lock
        return self._execute(Backup.MANUAL, BackupRun.MANUAL, target_uri, apply_retention=False)

    def _execute(self, tier: str, trigger: str, uri: str, apply_retention: bool = True) -> BackupRun:
        self.store.ensure_layout()
        self._abandon_leftovers(tier)
        options = self.dump_options

        run = self.tracker.start(tier, trigger)
        backup = Backup.objects.create(
            tier=tier,
            encrypted=self.archiver.encrypts,
            metadata={**options.as_metadata(), "source": mask_uri(uri)},
        )
        self.tracker.mark_running(run)
        backup.mark_running()

        dump_dir = self.store.scratch_path(f"dump_{backup.id}")
        output_path = None
        try:
            self.dump_executor.dump(uri, dump_dir, options)
            output_path = self.store.new_artifact_path(tier, backup.filename)
            result = self.archiver.archive(dump_dir, output_path)
            backup.mark_completed(
                size_bytes=result.size_bytes,
                checksum=result.checksum,
                local_path=self.store.relative_path(result.path),
                metadata={"original_size": result.original_size},
            )
        except BackupError as e:
            self._discard(dump_dir, output_path)
            backup.mark_failed(str(e))
            return self.tracker.fail(run, e, backup)
        except Exception as e:
            logger.exception(f"Unexpected error during {tier} backup {backup.id}")
            self._discard(dump_dir, output_path)
            backup.mark_failed(f"{type(e).__name__}: {e}")
            self.tracker.fail(run, e, backup)
            raise

        logger.info(f"Backup {backup.id} stored at {backup.local_path} ({backup.size_bytes} bytes)")

        replication = self.replicator.replicate(backup, result.path)

        retention_result = None
        if apply_retention:
            try:
                retention_result = self.retention.enforce(tier)
            except Exception as e:
                logger.error(f"Retention for {tier} failed after backup {backup.id}: {e}")

        return self.tracker.complete(run, backup, replication, retention_result)

    def _abandon_leftovers(self, tier: str):
        # Runs under the tier lock, so anything still in flight belongs to a dead process
        self.tracker.abandon_leftovers(tier)
        for backup in Backup.objects.filter(tier=tier, status__in=[Backup.PENDING, Backup.RUNNING]):
            tier_dir = self.store.root / tier
            self._discard(self.store.scratch_path(f"dump_{backup.id}"), tier_dir / backup.filename)
            for partial in tier_dir.glob(f".{backup.filename}*partial"):
                partial.unlink()
            backup.mark_failed("Abandoned: the process running this backup exited before it finished")
            logger.warning(f"Backup {backup.id} ({tier}) was abandoned and marked failed")

    def _discard(self, dump_dir: Path, output_path: Optional[Path]):
        self.store.discard_scratch(dump_dir)
        if output_path is not None and output_path.exists():
            output_path.unlink()

    def list_backups(self, tier: Optional[str] = None) -> List[Backup]:
        """Completed backups, newest first."""
        qs = Backup.objects.completed()
        if tier:
            qs = qs.filter(tier=tier)
        return list(qs.newest_first().prefetch_related("remote_copies"))

    def cleanup(self, tier: Optional[str] = None) -> Dict:
        """
        Force a retention pass for one tier (or all) and purge stale scratch entries.

        Tiers with a backup in progress are skipped when cleaning all tiers.

        Raises:
            RunInProgress: if ``tier`` is given and that tier is busy
        """
        tiers = [tier] if tier else list(TIERS)
        results = []
        busy = []
        for name in tiers:
            try:
                with self.guard.backup(name):
                    self._abandon_leftovers(name)
                    results.append(self.retention.enforce(name))
            except RunInProgress as e:
                if tier:
                    raise
                logger.warning(f"Skipping retention for {name}: {e}")
                busy.append(name)

        purged = self.store.purge_stale_temp(self.stale_temp_seconds)
        return {"results": results, "busy": busy, "purged": purged}

    def purge_stale_temp(self) -> int:
        return self.store.purge_stale_temp(self.stale_temp_seconds)

    def restore(
        self,
        reference: str,
        confirm: bool = False,
        target_uri: Optional[str] = None,
        snapshot: bool = False,
        initiated_by: str = "",
    ) -> BackupRestoreLog:
        return self.restore_executor.restore(
            reference,
            confirm=confirm,
            target_uri=target_uri or self.conf.restore_target_uri,
            snapshot=snapshot,
            initiated_by=initiated_by,
        )

    def verify(self, reference: Optional[str] = None) -> List[Dict]:
        """
        Check size, checksum and archive readability of local artifacts.

        Returns:
            One ``{"backup_id", "ok", "error"}`` entry per checked backup
        """
        if reference:
            backups = [resolve_backup(reference)]
        else:
            backups = list(Backup.objects.retained().newest_first())

        return [self._verify_one(backup) for backup in backups]

    def _verify_one(self, backup: Backup) -> Dict:
        entry = {"backup_id": backup.id, "tier": backup.tier, "ok": False, "error": None}

        if backup.status != Backup.COMPLETED:
            entry["error"] = f"status is {backup.status}"
            return entry
        if not self.store.exists(backup.local_path):
            entry["error"] = "local artifact file is missing"
            return entry

        path = self.store.absolute_path(backup.local_path)
        size = path.stat().st_size
        if size != backup.size_bytes:
            entry["error"] = f"size is {size} bytes, expected {backup.size_bytes}"
            return entry

        if not verify_checksum(path, backup.checksum):
            entry["error"] = "checksum mismatch"
            return entry

        scratch = self.store.scratch_path(f"verify_{backup.id}")
        try:
            members = self.archiver.verify(path, scratch, encrypted=backup.encrypted)
        except CompressionFailure as e:
            entry["error"] = str(e)
            return entry
        finally:
            self.store.discard_scratch(scratch)

        entry["ok"] = True
        entry["members"] = members
        return entry

    def status(self, limit: Optional[int] = None) -> Dict:
        return {
            "current": self.tracker.current_runs(),
            "history": self.tracker.history(limit),
            "locks": self.guard.active_locks(),
        }

    def check(self) -> List[Dict]:
        """
        Check that backups can run on this host.

        Returns:
            ``{"name", "ok", "detail"}`` per check
        """
        checks = []

        for name, check in (
            ("mongodump", self.dump_executor.check_available),
            ("mongorestore", self.restore_executor.check_available),
        ):
            try:
                checks.append({"name": name, "ok": True, "detail": check()})
            except BackupError as e:
                checks.append({"name": name, "ok": False, "detail": str(e)})

        try:
            self.store.ensure_layout()
            writable = os.access(self.store.root, os.W_OK)
            detail = str(self.store.root) if writable else f"{self.store.root} is not writable"
        except OSError as e:
            writable, detail = False, f"{self.store.root}: {e}"
        checks.append({"name": "backup root", "ok": writable, "detail": detail})

        checks.append(
            {
                "name": "destinations",
                "ok": True,
                "detail": ", ".join(d.name for d in self.conf.destinations) or "none (local only)",
            }
        )
        return checks
