"""
Backup and restore models.

``Backup`` rows are the persisted manifest of artifacts so that listing and
retention survive process restarts without scanning remote stores.
``BackupRun`` rows record the lifecycle of each pipeline execution (bounded
history). ``BackupRestoreLog`` rows audit every restore attempt.
"""

import secrets
import uuid
from datetime import timezone as dt_timezone
from typing import Optional

from django.db import models
from django.utils import timezone

from .exceptions import InvalidTransition


def generate_backup_id(now=None) -> str:
    """
    Generate a unique backup identifier ordered by creation time.

    Format: ``20261019T020000123456Z-3fa9c1`` (UTC, microseconds, random suffix).
    Two backups created within the same second still get distinct ids.
    """
    now = now or timezone.now()
    return f"{now.astimezone(dt_timezone.utc):%Y%m%dT%H%M%S%f}Z-{secrets.token_hex(3)}"


class BackupQuerySet(models.QuerySet):
    def completed(self):
        return self.filter(status=Backup.COMPLETED)

    def retained(self, tier: Optional[str] = None):
        """Completed backups whose artifact file is still held locally."""
        qs = self.completed().exclude(local_path="")
        if tier:
            qs = qs.filter(tier=tier)
        return qs

    def newest_first(self):
        return self.order_by("-created_at", "-id")


class Backup(models.Model):
    """
    One backup artifact produced by a pipeline run.

    Status moves PENDING -> RUNNING -> COMPLETED | FAILED. Terminal states are
    final. A COMPLETED backup always has ``size_bytes > 0``. Retention clears
    ``local_path`` once the local file is evicted; the record stays so that
    remote copies remain discoverable.
    """

    # Tiers
    MANUAL = "manual"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    TIER_CHOICES = [
        (MANUAL, "Manual"),
        (DAILY, "Daily"),
        (WEEKLY, "Weekly"),
        (MONTHLY, "Monthly"),
        (YEARLY, "Yearly"),
    ]

    # Status choices
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (RUNNING, "Running"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
    ]

    TERMINAL_STATUSES = (COMPLETED, FAILED)

    id = models.CharField(
        primary_key=True,
        max_length=64,
        default=generate_backup_id,
        editable=False,
        help_text="Unique identifier, ordered by creation time",
    )

    tier = models.CharField(
        max_length=16,
        choices=TIER_CHOICES,
        help_text="Retention/schedule tier the backup belongs to",
    )

    status = models.CharField(
        max_length=16,
        choices=STATUS_CHOICES,
        default=PENDING,
        help_text="Current status of the backup",
    )

    created_at = models.DateTimeField(
        default=timezone.now,
        help_text="Timestamp when the backup run started",
    )

    completed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Timestamp when the backup reached a terminal state",
    )

    size_bytes = models.BigIntegerField(
        default=0,
        help_text="Size of the stored artifact file in bytes",
    )

    checksum = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA-256 checksum of the stored artifact file",
    )

    local_path = models.CharField(
        max_length=500,
        blank=True,
        help_text="Artifact path relative to the backup root (empty if absent)",
    )

    encrypted = models.BooleanField(
        default=False,
        help_text="Whether the artifact is encrypted at rest",
    )

    error_message = models.TextField(
        null=True,
        blank=True,
        help_text="Error message if the backup failed",
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Dump options, uncompressed size and similar details",
    )

    objects = BackupQuerySet.as_manager()

    class Meta:
        db_table = "backups_backup"
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["tier", "status", "-created_at"], name="backup_tier_status_idx"),
            models.Index(fields=["-created_at"], name="backup_created_idx"),
        ]
        verbose_name = "Backup"
        verbose_name_plural = "Backups"

    def __str__(self):
        return f"{self.get_tier_display()} backup {self.id} ({self.status})"

    @property
    def filename(self) -> str:
        suffix = ".tar.gz.enc" if self.encrypted else ".tar.gz"
        return f"backup_{self.tier}_{self.id}{suffix}"

    def is_completed(self):
        """Check if backup completed successfully."""
        return self.status == self.COMPLETED

    def is_failed(self):
        """Check if backup failed."""
        return self.status == self.FAILED

    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def _check_not_terminal(self, target: str):
        if self.is_terminal():
            raise InvalidTransition(f"Backup {self.id} is {self.status}; cannot move to {target}")

    def mark_running(self):
        self._check_not_terminal(self.RUNNING)
        self.status = self.RUNNING
        self.save(update_fields=["status"])

    def mark_completed(self, size_bytes: int, checksum: str, local_path: str, metadata=None):
        """
        Record a finished artifact.

        Raises:
            ValueError: if ``size_bytes`` is not positive
            InvalidTransition: if the backup is already terminal
        """
        self._check_not_terminal(self.COMPLETED)
        if not size_bytes or size_bytes <= 0:
            raise ValueError(f"Backup {self.id} cannot complete with size {size_bytes}")

        self.status = self.COMPLETED
        self.size_bytes = size_bytes
        self.checksum = checksum
        self.local_path = local_path
        self.completed_at = timezone.now()
        if metadata:
            self.metadata = {**self.metadata, **metadata}
        self.save(
            update_fields=["status", "size_bytes", "checksum", "local_path", "completed_at", "metadata"]
        )

    def mark_failed(self, error_message: str):
        self._check_not_terminal(self.FAILED)
        self.status = self.FAILED
        self.error_message = error_message or "Unknown error"
        self.local_path = ""
        self.completed_at = timezone.now()
        self.save(update_fields=["status", "error_message", "local_path", "completed_at"])


class RemoteCopy(models.Model):
    """A verified copy of a backup artifact in a remote object store."""

    backup = models.ForeignKey(
        "Backup",
        on_delete=models.CASCADE,
        related_name="remote_copies",
        help_text="Backup this copy belongs to",
    )

    destination = models.CharField(
        max_length=100,
        help_text="Configured destination name",
    )

    provider = models.CharField(
        max_length=16,
        help_text="Object store provider (s3, r2, b2)",
    )

    location_uri = models.CharField(
        max_length=1000,
        help_text="URI of the object, e.g. s3://bucket/backups/daily/file.tar.gz",
    )

    encryption_scheme = models.CharField(
        max_length=32,
        help_text="Server-side encryption applied by the destination",
    )

    size_bytes = models.BigIntegerField(
        help_text="Verified size of the remote object in bytes",
    )

    uploaded_at = models.DateTimeField(
        default=timezone.now,
        help_text="Timestamp when the upload was verified",
    )

    class Meta:
        db_table = "backups_remote_copy"
        ordering = ["uploaded_at", "id"]
        verbose_name = "Remote Copy"
        verbose_name_plural = "Remote Copies"

    def __str__(self):
        return f"{self.destination}: {self.location_uri}"


class BackupRun(models.Model):
    """
    One execution of the backup pipeline for a tier.

    Only terminal runs count toward the bounded history; pruning is done by
    the run tracker after every terminal transition.
    """

    # Trigger choices
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"

    TRIGGER_CHOICES = [
        (SCHEDULED, "Scheduled"),
        (MANUAL, "Manual"),
    ]

    PENDING = Backup.PENDING
    RUNNING = Backup.RUNNING
    COMPLETED = Backup.COMPLETED
    FAILED = Backup.FAILED

    STATUS_CHOICES = Backup.STATUS_CHOICES
    TERMINAL_STATUSES = Backup.TERMINAL_STATUSES

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
    )

    tier = models.CharField(max_length=16, choices=Backup.TIER_CHOICES)

    trigger = models.CharField(max_length=16, choices=TRIGGER_CHOICES, default=MANUAL)

    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=PENDING)

    started_at = models.DateTimeField(default=timezone.now)

    ended_at = models.DateTimeField(null=True, blank=True)

    backup = models.ForeignKey(
        "Backup",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="runs",
    )

    error = models.TextField(null=True, blank=True)

    error_type = models.CharField(
        max_length=64,
        blank=True,
        help_text="Failure class, e.g. DumpFailure or Timeout",
    )

    replication_errors = models.JSONField(
        default=list,
        blank=True,
        help_text="Per-destination upload failures (non-fatal)",
    )

    retention_summary = models.JSONField(
        default=dict,
        blank=True,
        help_text="Result of the retention pass that followed the run",
    )

    notified_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the terminal event was handed to the notifier",
    )

    class Meta:
        db_table = "backups_run"
        ordering = ["-started_at"]
        indexes = [
            models.Index(fields=["status", "-started_at"], name="run_status_started_idx"),
            models.Index(fields=["tier", "-started_at"], name="run_tier_started_idx"),
        ]
        verbose_name = "Backup Run"
        verbose_name_plural = "Backup Runs"

    def __str__(self):
        return f"{self.tier} run {self.id} ({self.status})"

    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def degraded(self) -> bool:
        return self.status == self.COMPLETED and bool(self.replication_errors)

    @property
    def duration_ms(self) -> Optional[int]:
        if not self.ended_at:
            return None
        return int((self.ended_at - self.started_at).total_seconds() * 1000)


class BackupRestoreLog(models.Model):
    """Audit record of one restore attempt."""

    # Status choices
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    STATUS_CHOICES = [
        (IN_PROGRESS, "In Progress"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
    ]

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the restore operation",
    )

    backup = models.ForeignKey(
        "Backup",
        on_delete=models.CASCADE,
        related_name="restore_logs",
        help_text="Backup that was restored",
    )

    snapshot = models.ForeignKey(
        "Backup",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text="Backup of the target taken right before it was dropped",
    )

    target = models.CharField(
        max_length=500,
        help_text="Target database URI with credentials masked",
    )

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=IN_PROGRESS,
    )

    started_at = models.DateTimeField(default=timezone.now)

    completed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    duration_seconds = models.IntegerField(null=True, blank=True)

    initiated_by = models.CharField(
        max_length=150,
        blank=True,
        help_text="Operator or process that requested the restore",
    )

    class Meta:
        db_table = "backups_restore_log"
        ordering = ["-started_at"]
        verbose_name = "Backup Restore Log"
        verbose_name_plural = "Backup Restore Logs"

    def __str__(self):
        return f"Restore of {self.backup_id} - {self.started_at:%Y-%m-%d %H:%M} - {self.status}"

    def is_completed(self):
        """Check if restore completed successfully."""
        return self.status == self.COMPLETED

    def is_failed(self):
        """Check if restore failed."""
        return self.status == self.FAILED
