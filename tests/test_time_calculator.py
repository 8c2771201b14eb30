"""Pure time rules for appointments and trials."""

from datetime import date, datetime, time, timedelta, timezone

import pytest

from app.domain.scheduling.time_calculator import (
    Clock,
    appointment_end,
    archive_reference,
    get_business_tz,
    is_trial_expired,
    local_to_utc,
    renewal_date_from,
    should_archive,
    should_auto_confirm,
    should_complete,
    trial_cutoff,
)


class TestClock:
    def test_naive_input_is_utc(self):
        clock = Clock.at(datetime(2025, 3, 10, 15, 0), tz_name="America/Santiago")
        assert clock.utc == datetime(2025, 3, 10, 15, 0)
        # Chile is on summer time (UTC-3) in March
        assert clock.local == datetime(2025, 3, 10, 12, 0)

    def test_aware_input_is_converted(self):
        aware = datetime(2025, 7, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        clock = Clock.at(aware, tz_name="UTC")
        assert clock.utc == datetime(2025, 7, 1, 10, 0)
        assert clock.local == datetime(2025, 7, 1, 10, 0)
        assert clock.utc.tzinfo is None

    def test_isoformat_carries_utc_offset(self):
        clock = Clock.at(datetime(2025, 3, 10, 15, 0))
        assert clock.isoformat() == "2025-03-10T15:00:00+00:00"

    def test_unknown_timezone_raises(self):
        with pytest.raises(ValueError):
            get_business_tz("Mars/Olympus_Mons")


class TestAppointmentRules:
    def test_end_adds_service_duration(self):
        end = appointment_end(date(2025, 3, 10), time(23, 30), 45)
        assert end == datetime(2025, 3, 11, 0, 15)

    def test_auto_confirm_threshold_is_inclusive(self):
        start = datetime(2025, 3, 10, 14, 0)
        assert should_auto_confirm(start, datetime(2025, 3, 10, 12, 0), lead_minutes=120)
        assert not should_auto_confirm(start, datetime(2025, 3, 10, 11, 59, 59), lead_minutes=120)

    def test_completion_requires_end_strictly_past(self):
        now = datetime(2025, 3, 10, 12, 0)
        assert should_complete(now - timedelta(seconds=1), now)
        assert not should_complete(now, now)
        assert not should_complete(now + timedelta(seconds=1), now)

    def test_archive_after_retention(self):
        now = datetime(2025, 3, 10, 15, 0)
        assert should_archive(now - timedelta(days=7), now, retention_days=7)
        assert not should_archive(now - timedelta(days=6, hours=23), now, retention_days=7)

    def test_archive_reference_prefers_completed_at(self):
        completed_at = datetime(2025, 3, 1, 18, 0)
        assert archive_reference(completed_at, datetime(2025, 3, 1, 10, 0)) == completed_at

    def test_archive_reference_falls_back_to_scheduled_end(self):
        end_local = datetime(2025, 3, 1, 10, 0)
        reference = archive_reference(None, end_local, tz_name="America/Santiago")
        assert reference == datetime(2025, 3, 1, 13, 0)
        assert reference == local_to_utc(end_local, "America/Santiago")


class TestSubscriptionRules:
    def test_trial_boundary(self):
        now = datetime(2025, 3, 10, 15, 0)
        assert is_trial_expired(now - timedelta(days=3), now, trial_days=3)
        assert is_trial_expired(now - timedelta(days=3, minutes=1), now, trial_days=3)
        assert not is_trial_expired(now - timedelta(days=3) + timedelta(minutes=1), now, 3)
        assert trial_cutoff(now, 3) == datetime(2025, 3, 7, 15, 0)

    def test_renewal_is_now_plus_period(self):
        now = datetime(2025, 3, 10, 15, 0)
        assert renewal_date_from(now, 30) == datetime(2025, 4, 9, 15, 0)
