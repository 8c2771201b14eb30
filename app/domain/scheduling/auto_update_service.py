"""
Automated status transitions for appointments

Appointment statuses: pending → confirmed → completed → archived
                      pending/confirmed → cancelled (manual only)

- pending → confirmed: the scheduled start is within the auto-confirm lead
- confirmed → completed: the scheduled end (start + service duration) has passed
- completed → archived: completed more than the retention window ago

Passes run in that order so that a run immediately after a successful run
finds nothing left to do.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import (
    ARCHIVE_AFTER_DAYS,
    AUTO_CONFIRM_LEAD_MINUTES,
    DEFAULT_SERVICE_DURATION_MINUTES,
)
from ...models import AppointmentStatus, utcnow
from ...services.job_run_service import AUTO_UPDATE_JOB, record_job_run
from .repository import AppointmentRepository
from .time_calculator import (
    Clock,
    appointment_end,
    appointment_start,
    archive_reference,
    auto_confirm_threshold,
    should_archive,
    should_auto_confirm,
    should_complete,
)

logger = logging.getLogger(__name__)

# Valid transitions; cancelled is reachable by hand only
VALID_TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED},
    AppointmentStatus.CONFIRMED: {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED},
    AppointmentStatus.COMPLETED: {AppointmentStatus.ARCHIVED},
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.ARCHIVED: set(),
}

AUTOMATIC_TRANSITIONS = {
    (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED),
    (AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED),
    (AppointmentStatus.COMPLETED, AppointmentStatus.ARCHIVED),
}


def validate_status_transition(
    current_status: str, new_status: str, automatic: bool = False
) -> bool:
    """
    Validate if an appointment status transition is allowed

    Args:
        current_status: Current appointment status
        new_status: Desired new status
        automatic: True when the engine (not a person) requests the move

    Returns:
        bool: True if transition is valid, False otherwise
    """
    if current_status == new_status:
        return True

    try:
        current = AppointmentStatus(current_status)
        new = AppointmentStatus(new_status)
    except ValueError:
        return False

    if automatic:
        return (current, new) in AUTOMATIC_TRANSITIONS
    return new in VALID_TRANSITIONS[current]


def _service_duration(appointment) -> int:
    if appointment.service and appointment.service.duration:
        return appointment.service.duration
    return DEFAULT_SERVICE_DURATION_MINUTES


def _snapshot(appointments) -> list[dict]:
    # Plain values: ORM instances expire on every per-row commit/rollback
    return [
        {
            "id": apt.id,
            "date": apt.date,
            "time": apt.time,
            "duration": _service_duration(apt),
            "completed_at": apt.completed_at,
        }
        for apt in appointments
    ]


def _new_pass_result() -> dict:
    return {"updated": 0, "errors": [], "debug": []}


def _apply_transition(
    db: Session,
    result: dict,
    decision: dict,
    expected: AppointmentStatus,
    new: AppointmentStatus,
    completed_at: Optional[datetime] = None,
) -> None:
    appointment_id = decision["appointmentId"]

    if not validate_status_transition(expected.value, new.value, automatic=True):
        raise ValueError(f"Refusing automatic transition {expected.value} → {new.value}")

    try:
        moved = AppointmentRepository.compare_and_set_status(
            db, appointment_id, expected, new, completed_at=completed_at
        )
    except Exception as e:
        db.rollback()
        logger.error(
            f"❌ Appointment {appointment_id} failed {expected.value} → {new.value}: {e}"
        )
        result["errors"].append({"appointmentId": appointment_id, "message": str(e)})
        decision["outcome"] = "error"
    else:
        if moved:
            result["updated"] += 1
            decision["outcome"] = "updated"
            logger.info(
                f"✅ Appointment {appointment_id} transitioned: {expected.value} → {new.value}"
            )
        else:
            # Another run got there first
            decision["outcome"] = "skipped"
            logger.debug(f"ℹ️ Appointment {appointment_id} no longer {expected.value}, skipped")

    result["debug"].append(decision)


def _fetch_failed(result: dict, status: AppointmentStatus, error: Exception) -> dict:
    logger.error(f"❌ Error fetching {status.value} appointments: {error}")
    result["errors"].append(
        {"appointmentId": None, "message": f"Error fetching {status.value} appointments: {error}"}
    )
    return result


def auto_confirm_pending_appointments(
    db: Session, clock: Clock, lead_minutes: int = AUTO_CONFIRM_LEAD_MINUTES
) -> dict:
    """pending → confirmed once now >= start - lead"""
    result = _new_pass_result()
    last_date = (clock.local + timedelta(minutes=lead_minutes)).date()

    try:
        candidates = _snapshot(
            AppointmentRepository.list_by_status_until(db, AppointmentStatus.PENDING, last_date)
        )
    except Exception as e:
        db.rollback()
        return _fetch_failed(result, AppointmentStatus.PENDING, e)

    for apt in candidates:
        start = appointment_start(apt["date"], apt["time"])
        if not should_auto_confirm(start, clock.local, lead_minutes):
            continue
        decision = {
            "appointmentId": apt["id"],
            "from": AppointmentStatus.PENDING.value,
            "to": AppointmentStatus.CONFIRMED.value,
            "scheduledStart": start.isoformat(),
            "threshold": auto_confirm_threshold(start, lead_minutes).isoformat(),
            "now": clock.local.isoformat(),
        }
        _apply_transition(
            db, result, decision, AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED
        )

    return result


def auto_complete_confirmed_appointments(db: Session, clock: Clock) -> dict:
    """confirmed → completed once the scheduled end is strictly in the past"""
    result = _new_pass_result()

    try:
        candidates = _snapshot(
            AppointmentRepository.list_by_status_until(
                db, AppointmentStatus.CONFIRMED, clock.local.date()
            )
        )
    except Exception as e:
        db.rollback()
        return _fetch_failed(result, AppointmentStatus.CONFIRMED, e)

    for apt in candidates:
        end = appointment_end(apt["date"], apt["time"], apt["duration"])
        if not should_complete(end, clock.local):
            continue
        decision = {
            "appointmentId": apt["id"],
            "from": AppointmentStatus.CONFIRMED.value,
            "to": AppointmentStatus.COMPLETED.value,
            "scheduledStart": appointment_start(apt["date"], apt["time"]).isoformat(),
            "endTime": end.isoformat(),
            "durationMinutes": apt["duration"],
            "now": clock.local.isoformat(),
        }
        _apply_transition(
            db,
            result,
            decision,
            AppointmentStatus.CONFIRMED,
            AppointmentStatus.COMPLETED,
            completed_at=clock.utc,
        )

    return result


def auto_archive_completed_appointments(
    db: Session, clock: Clock, retention_days: int = ARCHIVE_AFTER_DAYS
) -> dict:
    """completed → archived once completed more than ``retention_days`` ago"""
    result = _new_pass_result()
    completed_before = clock.utc - timedelta(days=retention_days)

    try:
        candidates = _snapshot(
            AppointmentRepository.list_archive_candidates(
                db, completed_before, completed_before.date() + timedelta(days=1)
            )
        )
    except Exception as e:
        db.rollback()
        return _fetch_failed(result, AppointmentStatus.COMPLETED, e)

    for apt in candidates:
        end = appointment_end(apt["date"], apt["time"], apt["duration"])
        reference = archive_reference(apt["completed_at"], end)
        if not should_archive(reference, clock.utc, retention_days):
            continue
        decision = {
            "appointmentId": apt["id"],
            "from": AppointmentStatus.COMPLETED.value,
            "to": AppointmentStatus.ARCHIVED.value,
            "completedAt": reference.isoformat(),
            "retentionDays": retention_days,
            "now": clock.utc.isoformat(),
        }
        _apply_transition(
            db, result, decision, AppointmentStatus.COMPLETED, AppointmentStatus.ARCHIVED
        )

    return result


def run_all_auto_updates(
    db: Session,
    now: Optional[datetime] = None,
    lead_minutes: int = AUTO_CONFIRM_LEAD_MINUTES,
    retention_days: int = ARCHIVE_AFTER_DAYS,
) -> dict:
    """
    Run every appointment auto-update pass against a single instant

    Safe to call repeatedly and concurrently: each row update is conditioned
    on the expected previous status.

    Returns:
        dict: confirmed/completed/archived counts, itemized errors and
        per-decision debug entries
    """
    clock = Clock.at(now)

    confirmed = auto_confirm_pending_appointments(db, clock, lead_minutes)
    completed = auto_complete_confirmed_appointments(db, clock)
    archived = auto_archive_completed_appointments(db, clock, retention_days)

    summary = {
        "confirmed": confirmed["updated"],
        "completed": completed["updated"],
        "archived": archived["updated"],
        "errors": confirmed["errors"] + completed["errors"] + archived["errors"],
        "debug": confirmed["debug"] + completed["debug"] + archived["debug"],
        "evaluatedAt": clock.isoformat(),
    }

    total = summary["confirmed"] + summary["completed"] + summary["archived"]
    if total > 0 or summary["errors"]:
        logger.info(
            f"📊 Appointment auto-update: confirmed={summary['confirmed']} "
            f"completed={summary['completed']} archived={summary['archived']} "
            f"errors={len(summary['errors'])}"
        )
    else:
        logger.debug("ℹ️ No appointment status updates needed")

    return summary


def run_and_record(db: Session, trigger: str, now: Optional[datetime] = None) -> dict:
    """Run the auto-update batch and store it in the job ledger"""
    started_at = utcnow()
    t0 = time.perf_counter()

    summary = run_all_auto_updates(db, now=now)
    summary["durationMs"] = int((time.perf_counter() - t0) * 1000)

    record_job_run(
        db,
        AUTO_UPDATE_JOB,
        trigger,
        started_at,
        stats={
            "confirmed": summary["confirmed"],
            "completed": summary["completed"],
            "archived": summary["archived"],
            "errors": summary["errors"],
        },
    )
    return summary
