"""
Management command for backup operations.

    python manage.py backup create [--tier manual] [--async]
    python manage.py backup list [--tier daily]
    python manage.py backup restore <artifact> --confirm [--target URI] [--snapshot]
    python manage.py backup cleanup [--tier daily]
    python manage.py backup status [--limit 20]
    python manage.py backup verify [<artifact>]
    python manage.py backup check

Exits with status 1 on any failure.
"""

import getpass

from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from apps.backups.conf import TIERS
from apps.backups.exceptions import BackupError, ConfirmationRequired, RunInProgress
from apps.backups.models import BackupRun
from apps.backups.services import BackupService


def current_user():
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


RESTORE_USAGE = "Usage: manage.py backup restore <artifact-id|file|latest[:tier]> --confirm"


def format_size(size_bytes):
    size = float(size_bytes or 0)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def format_age(created_at, now=None):
    seconds = int(((now or timezone.now()) - created_at).total_seconds())
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


class Command(BaseCommand):
    help = "Create, list, restore, clean up and verify database backups"

    def add_arguments(self, parser):
        subparsers = parser.add_subparsers(dest="action", required=True)

        create = subparsers.add_parser("create", help="Run one backup now")
        create.add_argument("--tier", choices=TIERS, default="manual", help="Backup tier (default: manual)")
        create.add_argument(
            "--async", action="store_true", dest="run_async", help="Queue the backup on a Celery worker"
        )

        list_parser = subparsers.add_parser("list", help="List completed backups, newest first")
        list_parser.add_argument("--tier", choices=TIERS, help="Only list this tier")

        restore = subparsers.add_parser("restore", help="Restore a backup into the target database")
        restore.add_argument("artifact", nargs="?", help="Artifact id, file name, or latest[:tier]")
        restore.add_argument(
            "--confirm", action="store_true", help="Acknowledge that existing collections will be dropped"
        )
        restore.add_argument("--target", help="Target database URI (default: BACKUP_RESTORE_TARGET_URI)")
        restore.add_argument(
            "--snapshot", action="store_true", help="Back up the target before restoring into it"
        )

        cleanup = subparsers.add_parser("cleanup", help="Force a retention pass and purge stale scratch files")
        cleanup.add_argument("--tier", choices=TIERS, help="Only clean this tier (default: all)")

        status = subparsers.add_parser("status", help="Show running backups and recent history")
        status.add_argument("--limit", type=int, default=20, help="Number of history entries to show")

        verify = subparsers.add_parser("verify", help="Verify checksums and archive integrity")
        verify.add_argument("artifact", nargs="?", help="Artifact to verify (default: all local artifacts)")

        subparsers.add_parser("check", help="Validate configuration and tool availability")

    def get_service(self):
        try:
            return BackupService.from_settings(owner=f"cli:{current_user()}")
        except ImproperlyConfigured as e:
            raise CommandError(str(e))

    def handle(self, *args, **options):
        handler = getattr(self, f"handle_{options['action']}")
        return handler(options)

    def handle_create(self, options):
        tier = options["tier"]

        if options["run_async"]:
            from apps.backups.tasks import manual_backup

            task = manual_backup.delay(tier, initiated_by=current_user())
            self.stdout.write(self.style.SUCCESS(f"{tier.capitalize()} backup task queued: {task.id}"))
            return

        self.stdout.write(f"Starting {tier} backup...")
        try:
            run = self.get_service().run_backup(tier, trigger=BackupRun.MANUAL)
        except RunInProgress as e:
            raise CommandError(f"Backup rejected: {e}")

        if run.status != BackupRun.COMPLETED:
            raise CommandError(f"Backup failed ({run.error_type}): {run.error}")

        backup = run.backup
        self.stdout.write(
            self.style.SUCCESS(
                f"Backup {backup.id} completed: {backup.local_path} ({format_size(backup.size_bytes)})"
            )
        )
        for failure in run.replication_errors:
            self.stdout.write(
                self.style.WARNING(f"Replication to {failure['destination']} failed: {failure['error']}")
            )

    def handle_list(self, options):
        backups = self.get_service().list_backups(options.get("tier"))
        if not backups:
            self.stdout.write("No backups found.")
            return

        now = timezone.now()
        self.stdout.write(f"{'ID':<34} {'TIER':<8} {'SIZE':>10} {'AGE':>5}  {'LOCAL':<5}  REMOTE")
        for backup in backups:
            remote = ", ".join(copy.destination for copy in backup.remote_copies.all()) or "-"
            self.stdout.write(
                f"{backup.id:<34} {backup.tier:<8} {format_size(backup.size_bytes):>10} "
                f"{format_age(backup.created_at, now):>5}  {'yes' if backup.local_path else 'no':<5}  {remote}"
            )
        self.stdout.write(f"\n{len(backups)} backup(s)")

    def handle_restore(self, options):
        if not options.get("artifact"):
            raise CommandError(RESTORE_USAGE)

        if not options["confirm"]:
            self.stderr.write(
                self.style.WARNING(
                    "Restore drops existing collections in the target database. "
                    "Re-run with --confirm to proceed."
                )
            )
            raise CommandError("Restore not confirmed")

        service = self.get_service()
        self.stdout.write(f"Restoring {options['artifact']}...")
        try:
            restore_log = service.restore(
                options["artifact"],
                confirm=True,
                target_uri=options.get("target"),
                snapshot=options["snapshot"],
                initiated_by=current_user(),
            )
        except ConfirmationRequired as e:
            raise CommandError(str(e))
        except BackupError as e:
            raise CommandError(f"Restore failed ({type(e).__name__}): {e}")

        if restore_log.snapshot_id:
            self.stdout.write(f"Pre-restore snapshot: {restore_log.snapshot_id}")
        self.stdout.write(
            self.style.SUCCESS(
                f"Restore {restore_log.id} of {restore_log.backup_id} into {restore_log.target} "
                f"completed in {restore_log.duration_seconds}s"
            )
        )

    def handle_cleanup(self, options):
        try:
            outcome = self.get_service().cleanup(options.get("tier"))
        except RunInProgress as e:
            raise CommandError(f"Cleanup rejected: {e}")

        failures = 0
        for result in outcome["results"]:
            self.stdout.write(
                f"{result.tier}: kept {len(result.retained)}/{result.limit}, deleted {len(result.deleted)}, "
                f"skipped {len(result.skipped)}, failed {len(result.failed)}"
            )
            for failure in result.failed:
                self.stdout.write(self.style.ERROR(f"  {failure['backup_id']}: {failure['error']}"))
            failures += len(result.failed)
        for tier in outcome["busy"]:
            self.stdout.write(self.style.WARNING(f"{tier}: skipped, backup in progress"))
        self.stdout.write(f"Purged {outcome['purged']} stale scratch entries")

        if failures:
            raise CommandError(f"Cleanup finished with {failures} deletion failure(s)")
        self.stdout.write(self.style.SUCCESS("Cleanup completed"))

    def handle_status(self, options):
        status = self.get_service().status(options["limit"])

        self.stdout.write("Current runs:")
        if not status["current"]:
            self.stdout.write("  none")
        for run in status["current"]:
            self.stdout.write(f"  {run.id} {run.tier} {run.status} since {run.started_at:%Y-%m-%d %H:%M:%S}")

        if status["locks"]:
            self.stdout.write("Locks:")
            for lock in status["locks"]:
                self.stdout.write(f"  {lock['name']}: {lock.get('owner')} (pid {lock.get('pid')} on {lock.get('host')})")

        self.stdout.write("History:")
        if not status["history"]:
            self.stdout.write("  none")
        for run in status["history"]:
            line = f"  {run.started_at:%Y-%m-%d %H:%M:%S} {run.tier:<8} {run.status:<9}"
            if run.status == BackupRun.COMPLETED:
                line += f" {run.backup_id}"
                if run.degraded:
                    line += " (degraded)"
            else:
                line += f" {run.error_type}: {run.error}"
            self.stdout.write(line)

    def handle_verify(self, options):
        try:
            entries = self.get_service().verify(options.get("artifact"))
        except BackupError as e:
            raise CommandError(str(e))

        if not entries:
            self.stdout.write("No local artifacts to verify.")
            return

        bad = 0
        for entry in entries:
            if entry["ok"]:
                self.stdout.write(self.style.SUCCESS(f"OK      {entry['backup_id']}"))
            else:
                bad += 1
                self.stdout.write(self.style.ERROR(f"FAILED  {entry['backup_id']}: {entry['error']}"))

        if bad:
            raise CommandError(f"{bad} of {len(entries)} artifact(s) failed verification")

    def handle_check(self, options):
        checks = self.get_service().check()

        failed = 0
        self.stdout.write(self.style.SUCCESS("OK      configuration"))
        for check in checks:
            if check["ok"]:
                self.stdout.write(self.style.SUCCESS(f"OK      {check['name']}: {check['detail']}"))
            else:
                failed += 1
                self.stdout.write(self.style.ERROR(f"FAILED  {check['name']}: {check['detail']}"))

        if failed:
            raise CommandError(f"{failed} check(s) failed")
