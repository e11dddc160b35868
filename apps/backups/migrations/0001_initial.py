import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

import apps.backups.models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Backup",
            fields=[
                (
                    "id",
                    models.CharField(
                        default=apps.backups.models.generate_backup_id,
                        editable=False,
                        help_text="Unique identifier, ordered by creation time",
                        max_length=64,
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "tier",
                    models.CharField(
                        choices=[
                            ("manual", "Manual"),
                            ("daily", "Daily"),
                            ("weekly", "Weekly"),
                            ("monthly", "Monthly"),
                            ("yearly", "Yearly"),
                        ],
                        help_text="Retention/schedule tier the backup belongs to",
                        max_length=16,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("RUNNING", "Running"),
                            ("COMPLETED", "Completed"),
                            ("FAILED", "Failed"),
                        ],
                        default="PENDING",
                        help_text="Current status of the backup",
                        max_length=16,
                    ),
                ),
                (
                    "created_at",
                    models.DateTimeField(
                        default=django.utils.timezone.now,
                        help_text="Timestamp when the backup run started",
                    ),
                ),
                (
                    "completed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Timestamp when the backup reached a terminal state",
                        null=True,
                    ),
                ),
                (
                    "size_bytes",
                    models.BigIntegerField(
                        default=0, help_text="Size of the stored artifact file in bytes"
                    ),
                ),
                (
                    "checksum",
                    models.CharField(
                        blank=True,
                        help_text="SHA-256 checksum of the stored artifact file",
                        max_length=64,
                    ),
                ),
                (
                    "local_path",
                    models.CharField(
                        blank=True,
                        help_text="Artifact path relative to the backup root (empty if absent)",
                        max_length=500,
                    ),
                ),
                (
                    "encrypted",
                    models.BooleanField(
                        default=False, help_text="Whether the artifact is encrypted at rest"
                    ),
                ),
                (
                    "error_message",
                    models.TextField(
                        blank=True, help_text="Error message if the backup failed", null=True
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Dump options, uncompressed size and similar details",
                    ),
                ),
            ],
            options={
                "verbose_name": "Backup",
                "verbose_name_plural": "Backups",
                "db_table": "backups_backup",
                "ordering": ["-created_at", "-id"],
            },
        ),
        migrations.CreateModel(
            name="RemoteCopy",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                (
                    "destination",
                    models.CharField(help_text="Configured destination name", max_length=100),
                ),
                (
                    "provider",
                    models.CharField(help_text="Object store provider (s3, r2, b2)", max_length=16),
                ),
                (
                    "location_uri",
                    models.CharField(
                        help_text="URI of the object, e.g. s3://bucket/backups/daily/file.tar.gz",
                        max_length=1000,
                    ),
                ),
                (
                    "encryption_scheme",
                    models.CharField(
                        help_text="Server-side encryption applied by the destination", max_length=32
                    ),
                ),
                (
                    "size_bytes",
                    models.BigIntegerField(help_text="Verified size of the remote object in bytes"),
                ),
                (
                    "uploaded_at",
                    models.DateTimeField(
                        default=django.utils.timezone.now,
                        help_text="Timestamp when the upload was verified",
                    ),
                ),
                (
                    "backup",
                    models.ForeignKey(
                        help_text="Backup this copy belongs to",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="remote_copies",
                        to="backups.backup",
                    ),
                ),
            ],
            options={
                "verbose_name": "Remote Copy",
                "verbose_name_plural": "Remote Copies",
                "db_table": "backups_remote_copy",
                "ordering": ["uploaded_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="BackupRun",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4, editable=False, primary_key=True, serialize=False
                    ),
                ),
                (
                    "tier",
                    models.CharField(
                        choices=[
                            ("manual", "Manual"),
                            ("daily", "Daily"),
                            ("weekly", "Weekly"),
                            ("monthly", "Monthly"),
                            ("yearly", "Yearly"),
                        ],
                        max_length=16,
                    ),
                ),
                (
                    "trigger",
                    models.CharField(
                        choices=[("SCHEDULED", "Scheduled"), ("MANUAL", "Manual")],
                        default="MANUAL",
                        max_length=16,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("RUNNING", "Running"),
                            ("COMPLETED", "Completed"),
                            ("FAILED", "Failed"),
                        ],
                        default="PENDING",
                        max_length=16,
                    ),
                ),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("ended_at", models.DateTimeField(blank=True, null=True)),
                ("error", models.TextField(blank=True, null=True)),
                (
                    "error_type",
                    models.CharField(
                        blank=True,
                        help_text="Failure class, e.g. DumpFailure or Timeout",
                        max_length=64,
                    ),
                ),
                (
                    "replication_errors",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Per-destination upload failures (non-fatal)",
                    ),
                ),
                (
                    "retention_summary",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Result of the retention pass that followed the run",
                    ),
                ),
                (
                    "notified_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the terminal event was handed to the notifier",
                        null=True,
                    ),
                ),
                (
                    "backup",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="runs",
                        to="backups.backup",
                    ),
                ),
            ],
            options={
                "verbose_name": "Backup Run",
                "verbose_name_plural": "Backup Runs",
                "db_table": "backups_run",
                "ordering": ["-started_at"],
            },
        ),
        migrations.CreateModel(
            name="BackupRestoreLog",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for the restore operation",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "target",
                    models.CharField(
                        help_text="Target database URI with credentials masked", max_length=500
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("IN_PROGRESS", "In Progress"),
                            ("COMPLETED", "Completed"),
                            ("FAILED", "Failed"),
                        ],
                        default="IN_PROGRESS",
                        max_length=20,
                    ),
                ),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                ("duration_seconds", models.IntegerField(blank=True, null=True)),
                (
                    "initiated_by",
                    models.CharField(
                        blank=True,
                        help_text="Operator or process that requested the restore",
                        max_length=150,
                    ),
                ),
                (
                    "backup",
                    models.ForeignKey(
                        help_text="Backup that was restored",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="restore_logs",
                        to="backups.backup",
                    ),
                ),
                (
                    "snapshot",
                    models.ForeignKey(
                        blank=True,
                        help_text="Backup of the target taken right before it was dropped",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="backups.backup",
                    ),
                ),
            ],
            options={
                "verbose_name": "Backup Restore Log",
                "verbose_name_plural": "Backup Restore Logs",
                "db_table": "backups_restore_log",
                "ordering": ["-started_at"],
            },
        ),
        migrations.AddIndex(
            model_name="backup",
            index=models.Index(
                fields=["tier", "status", "-created_at"], name="backup_tier_status_idx"
            ),
        ),
        migrations.AddIndex(
            model_name="backup",
            index=models.Index(fields=["-created_at"], name="backup_created_idx"),
        ),
        migrations.AddIndex(
            model_name="backuprun",
            index=models.Index(fields=["status", "-started_at"], name="run_status_started_idx"),
        ),
        migrations.AddIndex(
            model_name="backuprun",
            index=models.Index(fields=["tier", "-started_at"], name="run_tier_started_idx"),
        ),
    ]
