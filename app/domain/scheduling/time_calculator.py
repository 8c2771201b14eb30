"""
Time rules for the appointment and subscription lifecycle.

Pure functions only: every rule receives "now" explicitly so batch runs,
tests and replays evaluate the same instant.

Appointments carry a business-local date and time with no offset. Audit
timestamps (created_at, completed_at) are naive UTC. A ``Clock`` holds both
views of the same instant so callers never mix them.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from dateutil import tz

from ...config import BUSINESS_TIMEZONE


def get_business_tz(name: str = BUSINESS_TIMEZONE):
    zone = tz.gettz(name)
    if zone is None:
        raise ValueError(f"Unknown business timezone: {name}")
    return zone


@dataclass(frozen=True)
class Clock:
    """One instant, seen as naive UTC and as naive business-local time"""

    utc: datetime
    local: datetime

    @classmethod
    def at(cls, now: Optional[datetime] = None, tz_name: str = BUSINESS_TIMEZONE) -> "Clock":
        # Naive inputs are taken as UTC
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        aware_utc = now.astimezone(timezone.utc)
        local = aware_utc.astimezone(get_business_tz(tz_name))
        return cls(utc=aware_utc.replace(tzinfo=None), local=local.replace(tzinfo=None))

    def isoformat(self) -> str:
        return self.utc.replace(tzinfo=timezone.utc).isoformat()


def local_to_utc(local_dt: datetime, tz_name: str = BUSINESS_TIMEZONE) -> datetime:
    aware = local_dt.replace(tzinfo=get_business_tz(tz_name))
    return aware.astimezone(timezone.utc).replace(tzinfo=None)


def appointment_start(appointment_date: date, appointment_time: time) -> datetime:
    return datetime.combine(appointment_date, appointment_time)


def appointment_end(
    appointment_date: date, appointment_time: time, duration_minutes: int
) -> datetime:
    return appointment_start(appointment_date, appointment_time) + timedelta(
        minutes=duration_minutes
    )


def auto_confirm_threshold(start: datetime, lead_minutes: int) -> datetime:
    """Local instant from which a pending appointment is assumed to happen"""
    return start - timedelta(minutes=lead_minutes)


def should_auto_confirm(start: datetime, now_local: datetime, lead_minutes: int) -> bool:
    return now_local >= auto_confirm_threshold(start, lead_minutes)


def should_complete(end: datetime, now_local: datetime) -> bool:
    # Strictly past: an appointment ending exactly now is still running
    return end < now_local


def archive_reference(
    completed_at: Optional[datetime], end_local: datetime, tz_name: str = BUSINESS_TIMEZONE
) -> datetime:
    """
    UTC instant an appointment reached ``completed``.

    Appointments completed by hand carry no completed_at; their scheduled end
    stands in for it.
    """
    if completed_at is not None:
        return completed_at
    return local_to_utc(end_local, tz_name)


def should_archive(reference_utc: datetime, now_utc: datetime, retention_days: int) -> bool:
    return reference_utc <= now_utc - timedelta(days=retention_days)


def trial_cutoff(now_utc: datetime, trial_days: int) -> datetime:
    """Profiles created at or before this instant have used up their trial"""
    return now_utc - timedelta(days=trial_days)


def is_trial_expired(created_at: datetime, now_utc: datetime, trial_days: int) -> bool:
    return now_utc - created_at >= timedelta(days=trial_days)


def renewal_date_from(now_utc: datetime, period_days: int) -> datetime:
    """Renewal is always now + period, never stacked on a previous value"""
    return now_utc + timedelta(days=period_days)
