"""
Celery beat schedule for tiered backups.

Each scheduled tier gets one beat entry built from its 5-field cron
expression. Overlap is handled at run time by the per-tier lock: a trigger
that fires while the previous run of the same tier is still going is
skipped, not queued.
"""

from typing import Dict

from celery.schedules import crontab

CRON_FIELDS = ("minute", "hour", "day_of_month", "month_of_year", "day_of_week")


def parse_cron(expression: str) -> crontab:
    """
    Convert ``"m h dom mon dow"`` into a Celery ``crontab``.

    Raises:
        ValueError: if the expression does not have five fields or a field is invalid
    """
    if not isinstance(expression, str):
        raise ValueError(f"Cron expression must be a string, got {expression!r}")

    fields = expression.split()
    if len(fields) != len(CRON_FIELDS):
        raise ValueError(f"Cron expression must have 5 fields, got {expression!r}")

    try:
        return crontab(**dict(zip(CRON_FIELDS, fields)))
    except Exception as e:
        # celery raises ParseException / ValueError depending on the field
        raise ValueError(f"Invalid cron expression {expression!r}: {e}") from e


def build_beat_schedule(schedules: Dict[str, str]) -> dict:
    """Build ``beat_schedule`` entries for every tier with a cron expression."""
    beat_schedule = {}
    for tier, expression in sorted(schedules.items()):
        beat_schedule[f"backup-{tier}"] = {
            "task": "apps.backups.tasks.scheduled_backup",
            "schedule": parse_cron(expression),
            "args": (tier,),
            "options": {"queue": "backups", "priority": 10},
        }
    beat_schedule["backup-purge-stale-temp"] = {
        "task": "apps.backups.tasks.purge_stale_temp",
        "schedule": crontab(hour=5, minute=0),
        "options": {"queue": "backups", "priority": 2},
    }
    return beat_schedule
