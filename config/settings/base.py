"""
Base Django settings for the document database backup service.
Common settings shared across all environments.
"""

import os
from pathlib import Path

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent.parent


def env_bool(name, default=False):
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


def env_int(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        # Left as-is so that backup settings validation reports it
        return value


def env_list(name, default=""):
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# Application definition
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    # Local apps
    "apps.backups",
]

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Internationalization
LANGUAGE_CODE = "en"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

# Celery Configuration
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_WORKER_PREFETCH_MULTIPLIER = 1  # Backups are long-running
CELERY_WORKER_MAX_TASKS_PER_CHILD = 100

# Email Configuration
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "backups@localhost")
SERVER_EMAIL = os.getenv("SERVER_EMAIL", DEFAULT_FROM_EMAIL)

# Backup System Configuration
MONGODB_URI = os.getenv("MONGODB_URI", "")
BACKUP_RESTORE_TARGET_URI = os.getenv("BACKUP_RESTORE_TARGET_URI", "")
BACKUP_LOCAL_PATH = os.getenv("BACKUP_LOCAL_PATH", "/var/backups/docstore")

BACKUP_RETENTION = {
    "manual": env_int("BACKUP_RETENTION_MANUAL", 10),
    "daily": env_int("BACKUP_RETENTION_DAILY", 7),
    "weekly": env_int("BACKUP_RETENTION_WEEKLY", 4),
    "monthly": env_int("BACKUP_RETENTION_MONTHLY", 12),
    "yearly": env_int("BACKUP_RETENTION_YEARLY", 3),
}

BACKUP_SCHEDULES = {
    "daily": os.getenv("BACKUP_SCHEDULE_DAILY", "0 2 * * *"),  # 2:00 AM every day
    "weekly": os.getenv("BACKUP_SCHEDULE_WEEKLY", "0 1 * * 0"),  # 1:00 AM every Sunday
    "monthly": os.getenv("BACKUP_SCHEDULE_MONTHLY", "0 0 1 * *"),  # Midnight on the 1st
    "yearly": os.getenv("BACKUP_SCHEDULE_YEARLY", "0 3 1 1 *"),  # 3:00 AM on January 1st
}
# An empty expression disables the tier's schedule
BACKUP_SCHEDULES = {tier: cron for tier, cron in BACKUP_SCHEDULES.items() if cron.strip()}

BACKUP_EXCLUDED_COLLECTIONS = env_list("BACKUP_EXCLUDED_COLLECTIONS", "sessions,temp_data")
BACKUP_POINT_IN_TIME = env_bool("BACKUP_POINT_IN_TIME", False)
BACKUP_PARALLEL_COLLECTIONS = env_int("BACKUP_PARALLEL_COLLECTIONS", 4)

BACKUP_TIMEOUTS = {
    "dump": env_int("BACKUP_TIMEOUT_DUMP", 60 * 60),  # 1 hour
    "archive": env_int("BACKUP_TIMEOUT_ARCHIVE", 30 * 60),  # 30 minutes
    "upload": env_int("BACKUP_TIMEOUT_UPLOAD", 30 * 60),  # 30 minutes
    "restore": env_int("BACKUP_TIMEOUT_RESTORE", 2 * 60 * 60),  # 2 hours
}

BACKUP_ENCRYPTION_ENABLED = env_bool("BACKUP_ENCRYPTION_ENABLED", False)
BACKUP_ENCRYPTION_KEY = os.getenv("BACKUP_ENCRYPTION_KEY", "")

BACKUP_RUN_HISTORY_LIMIT = env_int("BACKUP_RUN_HISTORY_LIMIT", 100)
BACKUP_DUMP_BINARY = os.getenv("BACKUP_DUMP_BINARY", "mongodump")
BACKUP_RESTORE_BINARY = os.getenv("BACKUP_RESTORE_BINARY", "mongorestore")

# Remote destinations - each one is enabled by setting its bucket
BACKUP_DESTINATIONS = []

if os.getenv("BACKUP_S3_BUCKET"):
    BACKUP_DESTINATIONS.append(
        {
            "name": "s3",
            "provider": "s3",
            "bucket": os.getenv("BACKUP_S3_BUCKET"),
            "region": os.getenv("BACKUP_S3_REGION", "us-east-1"),
            "prefix": os.getenv("BACKUP_S3_PREFIX", "backups/"),
            "endpoint_url": os.getenv("BACKUP_S3_ENDPOINT_URL", ""),
            "access_key_id": os.getenv("BACKUP_S3_ACCESS_KEY_ID", ""),
            "secret_access_key": os.getenv("BACKUP_S3_SECRET_ACCESS_KEY", ""),
            "server_side_encryption": os.getenv("BACKUP_S3_SSE", "AES256"),
            "kms_key_id": os.getenv("BACKUP_S3_KMS_KEY_ID", ""),
            "storage_class": os.getenv("BACKUP_S3_STORAGE_CLASS", "STANDARD_IA"),
        }
    )

if os.getenv("R2_BUCKET_NAME"):
    BACKUP_DESTINATIONS.append(
        {
            "name": "r2",
            "provider": "r2",
            "bucket": os.getenv("R2_BUCKET_NAME"),
            "account_id": os.getenv("R2_ACCOUNT_ID", ""),
            "prefix": os.getenv("R2_PREFIX", "backups/"),
            "access_key_id": os.getenv("R2_ACCESS_KEY_ID", ""),
            "secret_access_key": os.getenv("R2_SECRET_ACCESS_KEY", ""),
        }
    )

if os.getenv("B2_BUCKET_NAME"):
    BACKUP_DESTINATIONS.append(
        {
            "name": "b2",
            "provider": "b2",
            "bucket": os.getenv("B2_BUCKET_NAME"),
            "region": os.getenv("B2_REGION", "us-east-005"),
            "prefix": os.getenv("B2_PREFIX", "backups/"),
            "access_key_id": os.getenv("B2_ACCESS_KEY_ID", ""),
            "secret_access_key": os.getenv("B2_SECRET_ACCESS_KEY", ""),
        }
    )

# Notifications - outcomes are always logged; email and webhook are optional
BACKUP_NOTIFICATIONS = {
    "email": {
        "enabled": env_bool("BACKUP_EMAIL_ENABLED", False),
        "recipients": env_list("BACKUP_EMAIL_RECIPIENTS"),
        "on_success": env_bool("BACKUP_EMAIL_ON_SUCCESS", False),
        "on_failure": env_bool("BACKUP_EMAIL_ON_FAILURE", True),
    },
    "webhook": {
        "enabled": env_bool("BACKUP_WEBHOOK_ENABLED", False),
        "url": os.getenv("BACKUP_WEBHOOK_URL", ""),
        "timeout": env_int("BACKUP_WEBHOOK_TIMEOUT", 10),
    },
}


def backup_task_time_limit(timeouts, margin=10 * 60):
    """Hard limit for backup tasks: the sum of every phase timeout plus a margin."""
    try:
        return sum(int(timeouts[phase]) for phase in ("dump", "archive", "upload", "restore")) + margin
    except (KeyError, TypeError, ValueError):
        return 6 * 60 * 60


# Backup tasks must never be killed before their own phase timeouts fire
CELERY_TASK_TIME_LIMIT = backup_task_time_limit(BACKUP_TIMEOUTS)
CELERY_TASK_SOFT_TIME_LIMIT = CELERY_TASK_TIME_LIMIT - 5 * 60

# Create logs directory if it doesn't exist
LOGS_DIR = BASE_DIR / "logs"


def validate_required_env_vars(required_vars=None):
    """
    Validate that all required environment variables are set.
    This function should be called at the end of each environment-specific settings file.
    """
    required_vars = required_vars or {
        "MONGODB_URI": "Connection URI of the database to back up",
    }

    missing_vars = [
        f"{var} ({description})" for var, description in required_vars.items() if not os.getenv(var)
    ]

    if missing_vars:
        error_msg = (
            "Missing required environment variables:\n"
            + "\n".join(f"  - {var}" for var in missing_vars)
            + "\n\nPlease set these variables in your .env file or environment."
        )
        raise ValueError(error_msg)
