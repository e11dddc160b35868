"""
Tests for the Celery Beat schedule of tiered backups.
"""

import pytest
from celery.schedules import crontab

from apps.backups.scheduling import build_beat_schedule, parse_cron


class TestParseCron:
    def test_daily_expression(self):
        schedule = parse_cron("0 2 * * *")

        assert isinstance(schedule, crontab)
        assert schedule.hour == {2}
        assert schedule.minute == {0}

    def test_weekly_expression(self):
        schedule = parse_cron("0 1 * * 0")
        assert schedule.day_of_week == {0}

    @pytest.mark.parametrize("expression", ["", "0 2 * *", "0 2 * * * *", "every day"])
    def test_wrong_field_count(self, expression):
        with pytest.raises(ValueError, match="5 fields"):
            parse_cron(expression)

    def test_invalid_field(self):
        with pytest.raises(ValueError, match="Invalid cron expression"):
            parse_cron("61 2 * * *")

    def test_not_a_string(self):
        with pytest.raises(ValueError):
            parse_cron(None)


class TestBuildBeatSchedule:
    def test_one_entry_per_tier(self):
        beat_schedule = build_beat_schedule({"daily": "0 2 * * *", "yearly": "0 3 1 1 *"})

        assert set(beat_schedule) == {"backup-daily", "backup-yearly", "backup-purge-stale-temp"}

        daily = beat_schedule["backup-daily"]
        assert daily["task"] == "apps.backups.tasks.scheduled_backup"
        assert daily["args"] == ("daily",)
        assert daily["schedule"].hour == {2}
        assert daily["options"]["queue"] == "backups"

    def test_no_tiers_still_purges_temp(self):
        beat_schedule = build_beat_schedule({})
        assert list(beat_schedule) == ["backup-purge-stale-temp"]
        assert beat_schedule["backup-purge-stale-temp"]["task"] == "apps.backups.tasks.purge_stale_temp"
