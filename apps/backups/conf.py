"""
Typed access to the backup system configuration.

Raw values live in Django settings (populated from the environment in
``config/settings/base.py``). This module turns them into a validated,
immutable ``BackupSettings`` object. Settings are re-read on every call so
that overrides made at runtime (tests, management commands) take effect.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)

TIERS = ("manual", "daily", "weekly", "monthly", "yearly")
SCHEDULED_TIERS = ("daily", "weekly", "monthly", "yearly")
PHASES = ("dump", "archive", "upload", "restore")
PROVIDERS = ("s3", "r2", "b2")
SSE_SCHEMES = ("AES256", "aws:kms")

DEFAULT_RETENTION = {"manual": 10, "daily": 7, "weekly": 4, "monthly": 12, "yearly": 3}
DEFAULT_TIMEOUTS = {"dump": 3600, "archive": 1800, "upload": 1800, "restore": 7200}


@dataclass(frozen=True)
class Destination:
    """One remote object store an artifact is replicated to."""

    name: str
    provider: str
    bucket: str
    region: str = "us-east-1"
    prefix: str = "backups/"
    account_id: str = ""
    endpoint_url: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    server_side_encryption: str = "AES256"
    kms_key_id: str = ""
    storage_class: str = ""


@dataclass(frozen=True)
class NotificationSettings:
    email_enabled: bool = False
    email_recipients: Tuple[str, ...] = ()
    email_on_success: bool = False
    email_on_failure: bool = True
    webhook_enabled: bool = False
    webhook_url: str = ""
    webhook_timeout: int = 10


@dataclass(frozen=True)
class BackupSettings:
    mongodb_uri: str
    restore_target_uri: str
    local_path: Path
    retention: Dict[str, int]
    schedules: Dict[str, str]
    excluded_collections: FrozenSet[str]
    point_in_time: bool
    parallelism: int
    timeouts: Dict[str, int]
    destinations: Tuple[Destination, ...] = ()
    encryption_enabled: bool = False
    encryption_key: str = ""
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    run_history_limit: int = 100
    dump_binary: str = "mongodump"
    restore_binary: str = "mongorestore"

    def timeout_for(self, phase: str) -> int:
        return self.timeouts[phase]

    @property
    def pipeline_budget_seconds(self) -> int:
        """Upper bound on the duration of one backup run."""
        return sum(self.timeouts[phase] for phase in ("dump", "archive", "upload"))


def mask_uri(uri: Optional[str]) -> str:
    """
    Hide the password component of a connection URI.

    ``mongodb://app:secret@db:27017/prod`` -> ``mongodb://app:***@db:27017/prod``
    """
    if not uri:
        return ""
    try:
        parts = urlsplit(uri)
    except ValueError:
        return "***"
    if "@" not in parts.netloc:
        return uri
    credentials, hosts = parts.netloc.rsplit("@", 1)
    username = credentials.split(":", 1)[0]
    netloc = f"{username}:***@{hosts}" if ":" in credentials else f"{username}@{hosts}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _build_destination(raw: dict) -> Destination:
    known = Destination.__dataclass_fields__
    unknown = set(raw) - set(known)
    if unknown:
        raise ImproperlyConfigured(f"Unknown backup destination option(s): {sorted(unknown)}")
    try:
        return Destination(**raw)
    except TypeError as e:
        raise ImproperlyConfigured(f"Invalid backup destination {raw.get('name')!r}: {e}") from e


def _build_notifications(raw: dict) -> NotificationSettings:
    email = raw.get("email", {})
    webhook = raw.get("webhook", {})
    return NotificationSettings(
        email_enabled=bool(email.get("enabled", False)),
        email_recipients=tuple(r for r in email.get("recipients", ()) if r),
        email_on_success=bool(email.get("on_success", False)),
        email_on_failure=bool(email.get("on_failure", True)),
        webhook_enabled=bool(webhook.get("enabled", False)),
        webhook_url=webhook.get("url") or "",
        webhook_timeout=int(webhook.get("timeout", 10)),
    )


def get_backup_settings() -> BackupSettings:
    """Build ``BackupSettings`` from the current Django settings (unvalidated)."""
    mongodb_uri = getattr(settings, "MONGODB_URI", "") or ""
    retention = dict(DEFAULT_RETENTION)
    retention.update(getattr(settings, "BACKUP_RETENTION", {}) or {})
    timeouts = dict(DEFAULT_TIMEOUTS)
    timeouts.update(getattr(settings, "BACKUP_TIMEOUTS", {}) or {})

    return BackupSettings(
        mongodb_uri=mongodb_uri,
        restore_target_uri=getattr(settings, "BACKUP_RESTORE_TARGET_URI", "") or mongodb_uri,
        local_path=Path(getattr(settings, "BACKUP_LOCAL_PATH", "/var/backups/docstore")),
        retention=retention,
        schedules=dict(getattr(settings, "BACKUP_SCHEDULES", {}) or {}),
        excluded_collections=frozenset(getattr(settings, "BACKUP_EXCLUDED_COLLECTIONS", ()) or ()),
        point_in_time=bool(getattr(settings, "BACKUP_POINT_IN_TIME", False)),
        parallelism=getattr(settings, "BACKUP_PARALLEL_COLLECTIONS", 4),
        timeouts=timeouts,
        destinations=tuple(
            _build_destination(raw) for raw in getattr(settings, "BACKUP_DESTINATIONS", ()) or ()
        ),
        encryption_enabled=bool(getattr(settings, "BACKUP_ENCRYPTION_ENABLED", False)),
        encryption_key=getattr(settings, "BACKUP_ENCRYPTION_KEY", "") or "",
        notifications=_build_notifications(getattr(settings, "BACKUP_NOTIFICATIONS", {}) or {}),
        run_history_limit=getattr(settings, "BACKUP_RUN_HISTORY_LIMIT", 100),
        dump_binary=getattr(settings, "BACKUP_DUMP_BINARY", "mongodump"),
        restore_binary=getattr(settings, "BACKUP_RESTORE_BINARY", "mongorestore"),
    )


def _validate_int(name: str, value, minimum: Optional[int] = None) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ImproperlyConfigured(f"{name} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{name} must be >= {minimum}, got {value}")


def validate_backup_settings(backup_settings: Optional[BackupSettings] = None) -> BackupSettings:  # noqa: C901
    """
    Validate the backup configuration and return it.

    Called from ``BackupsConfig.ready()`` so that a broken configuration stops
    the process before any run can be accepted.

    Raises:
        ImproperlyConfigured: describing every problem found
    """
    from .scheduling import parse_cron

    conf = backup_settings or get_backup_settings()
    problems = []

    if not conf.mongodb_uri:
        problems.append("MONGODB_URI is required")
    elif not conf.mongodb_uri.startswith(("mongodb://", "mongodb+srv://")):
        problems.append(f"MONGODB_URI must be a mongodb:// URI, got {mask_uri(conf.mongodb_uri)}")

    if not str(conf.local_path):
        problems.append("BACKUP_LOCAL_PATH is required")

    for tier, count in conf.retention.items():
        if tier not in TIERS:
            problems.append(f"BACKUP_RETENTION has unknown tier {tier!r}")
            continue
        try:
            _validate_int(f"BACKUP_RETENTION[{tier!r}]", count)
        except ImproperlyConfigured as e:
            problems.append(str(e))

    for tier, expression in conf.schedules.items():
        if tier not in SCHEDULED_TIERS:
            problems.append(f"BACKUP_SCHEDULES has unknown tier {tier!r}")
            continue
        try:
            parse_cron(expression)
        except ValueError as e:
            problems.append(f"BACKUP_SCHEDULES[{tier!r}]: {e}")

    for phase in PHASES:
        try:
            _validate_int(f"BACKUP_TIMEOUTS[{phase!r}]", conf.timeouts.get(phase), minimum=1)
        except ImproperlyConfigured as e:
            problems.append(str(e))

    for name, value, minimum in (
        ("BACKUP_PARALLEL_COLLECTIONS", conf.parallelism, 1),
        ("BACKUP_RUN_HISTORY_LIMIT", conf.run_history_limit, 1),
    ):
        try:
            _validate_int(name, value, minimum=minimum)
        except ImproperlyConfigured as e:
            problems.append(str(e))

    if conf.point_in_time and conf.excluded_collections:
        problems.append(
            "BACKUP_POINT_IN_TIME requires a full dump; it cannot be combined with "
            "BACKUP_EXCLUDED_COLLECTIONS"
        )

    seen_names = set()
    for destination in conf.destinations:
        label = f"Backup destination {destination.name!r}"
        if not destination.name or destination.name in seen_names:
            problems.append(f"{label} needs a unique name")
        seen_names.add(destination.name)
        if destination.provider not in PROVIDERS:
            problems.append(f"{label} has unknown provider {destination.provider!r}")
        if not destination.bucket:
            problems.append(f"{label} has no bucket")
        if destination.server_side_encryption not in SSE_SCHEMES:
            problems.append(
                f"{label} has unsupported server-side encryption "
                f"{destination.server_side_encryption!r}"
            )
        if destination.server_side_encryption == "aws:kms" and not destination.kms_key_id:
            problems.append(f"{label} uses aws:kms without a kms_key_id")
        if destination.provider in ("r2", "b2") and not (
            destination.access_key_id and destination.secret_access_key
        ):
            problems.append(f"{label} requires access_key_id and secret_access_key")
        if destination.provider == "r2" and not (destination.account_id or destination.endpoint_url):
            problems.append(f"{label} requires account_id or endpoint_url")

    if conf.encryption_enabled:
        if not conf.encryption_key:
            problems.append("BACKUP_ENCRYPTION_ENABLED is set but BACKUP_ENCRYPTION_KEY is empty")
        else:
            try:
                Fernet(conf.encryption_key)
            except (ValueError, TypeError):
                problems.append("BACKUP_ENCRYPTION_KEY is not a valid Fernet key")

    if conf.notifications.email_enabled and not conf.notifications.email_recipients:
        problems.append("Email notifications are enabled but BACKUP_EMAIL_RECIPIENTS is empty")
    if conf.notifications.webhook_enabled and not conf.notifications.webhook_url:
        problems.append("Webhook notifications are enabled but BACKUP_WEBHOOK_URL is empty")

    if problems:
        raise ImproperlyConfigured(
            "Invalid backup configuration:\n" + "\n".join(f"  - {p}" for p in problems)
        )

    logger.debug(
        f"Backup configuration valid: root={conf.local_path}, "
        f"destinations={[d.name for d in conf.destinations]}"
    )
    return conf
