"""
Celery configuration for the document database backup service.
"""

import os

from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.development")

app = Celery("docstore_backups")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Task routing configuration
app.conf.task_routes = {
    "apps.backups.tasks.*": {"queue": "backups", "priority": 10},
}


@app.on_after_configure.connect
def setup_backup_schedule(sender, **kwargs):
    """Build Celery Beat entries from the configured tier schedules."""
    from django.conf import settings

    from apps.backups.scheduling import build_beat_schedule

    sender.conf.beat_schedule.update(build_beat_schedule(settings.BACKUP_SCHEDULES))
