"""
Unit tests for stage triggers and schedule parsing.
"""

from datetime import datetime, timedelta, timezone

import pytest

from engine.changeflow.stage import AfterStage, Cron, Interval, parse_duration, parse_schedule

NOW = datetime(2024, 1, 1, 12, 0, 30, tzinfo=timezone.utc)


class TestParseSchedule:
    """Tests for parse_schedule()."""

    @pytest.mark.parametrize(
        "text,seconds",
        [
            ("1 minute", 60),
            ("5 minutes", 300),
            ("30 seconds", 30),
            ("30s", 30),
            ("2 hours", 7200),
            ("90", 90),
            (45, 45),
        ],
    )
    def test_intervals(self, text, seconds):
        assert parse_schedule(text) == Interval(seconds)

    def test_cron(self):
        trigger = parse_schedule("USING CRON */5 * * * *")
        assert trigger == Cron("*/5 * * * *")

    def test_cron_with_timezone(self):
        trigger = parse_schedule("USING CRON 0 9 * * * Europe/Paris")
        assert trigger == Cron("0 9 * * *", timezone="Europe/Paris")

    @pytest.mark.parametrize("text", ["", "soon", "5 fortnights", "0 seconds", "USING CRON nope"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_schedule(text)

    def test_parse_duration(self):
        assert parse_duration("30s") == 30
        assert parse_duration(2.5) == 2.5
        with pytest.raises(ValueError):
            parse_duration("USING CRON * * * * *")


class TestTriggers:
    """Tests for trigger fire times."""

    def test_interval_fires_on_first_tick(self):
        trigger = Interval(60)
        assert trigger.first_fire(NOW) == NOW
        assert trigger.next_fire(NOW) == NOW + timedelta(seconds=60)

    def test_cron_fires_at_next_match(self):
        trigger = Cron("*/5 * * * *")
        assert trigger.first_fire(NOW) == datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)

    def test_cron_timezone(self):
        """Cron expressions are evaluated in their timezone."""
        trigger = Cron("0 9 * * *", timezone="Europe/Paris")
        fire = trigger.next_fire(NOW)
        assert fire.astimezone(timezone.utc) == datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc)

    def test_unknown_timezone(self):
        with pytest.raises(ValueError):
            Cron("* * * * *", timezone="Mars/Olympus")

    def test_str(self):
        assert str(Interval(60)) == "every 60s"
        assert str(AfterStage("extract")) == "after extract"
        assert str(Cron("0 * * * *")) == "cron 0 * * * *"
