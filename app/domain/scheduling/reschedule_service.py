"""
Appointment rescheduling

The new date/time is committed first. Notifications to the client and the
professional follow, carrying both the old and the new slot; their failure
is logged and never undoes the committed change.
"""

import logging
from datetime import date, time
from typing import Optional

from sqlalchemy.orm import Session

from ...models import AppointmentStatus
from ...services.notification_service import (
    RescheduleNotice,
    notify_safely,
    send_reschedule_notifications,
)
from .repository import AppointmentRepository

logger = logging.getLogger(__name__)

RESCHEDULABLE_STATUSES = {AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value}


class RescheduleError(Exception):
    """Raised when an appointment cannot be rescheduled"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def reschedule_appointment(
    db: Session, appointment_id: int, new_date: date, new_time: time
) -> tuple[dict, RescheduleNotice]:
    """
    Move an appointment to a new slot and commit

    Returns:
        The response summary and the notice to send afterwards

    Raises:
        RescheduleError: unknown appointment (404), terminal status (400),
        store failure (500)
    """
    appointment = AppointmentRepository.get_by_id(db, appointment_id)
    if not appointment:
        raise RescheduleError("Appointment not found", status_code=404)

    if appointment.status not in RESCHEDULABLE_STATUSES:
        raise RescheduleError(
            f"Cannot reschedule an appointment with status '{appointment.status}'"
        )

    old_date, old_time = appointment.date, appointment.time
    profile = appointment.profile
    service = appointment.service

    notice = RescheduleNotice(
        appointment_id=appointment.id,
        client_name=appointment.client_name,
        client_email=appointment.client_email,
        client_phone=appointment.client_phone,
        professional_name=(profile.name if profile and profile.name else "Profesional"),
        professional_email=profile.email if profile else None,
        professional_phone=profile.whatsapp if profile else None,
        business_name=(
            (profile.business_name or profile.name) if profile else None
        ) or "MicroAgenda",
        service_name=service.name if service else "Servicio",
        old_date=old_date,
        old_time=old_time,
        new_date=new_date,
        new_time=new_time,
    )

    try:
        updated = AppointmentRepository.update_date_time(
            db, appointment.id, RESCHEDULABLE_STATUSES, new_date, new_time
        )
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Failed to reschedule appointment {appointment_id}: {e}")
        raise RescheduleError("Failed to update appointment", status_code=500) from e

    if not updated:
        # Closed by another writer between the read and the update
        db.refresh(appointment)
        logger.warning(
            f"⚠️ Appointment {appointment_id} moved to '{appointment.status}' before reschedule"
        )
        raise RescheduleError(
            f"Cannot reschedule an appointment with status '{appointment.status}'"
        )

    logger.info(
        f"✅ Appointment {appointment_id} rescheduled from {old_date} {old_time} "
        f"to {new_date} {new_time}"
    )

    summary = {
        "success": True,
        "message": "Appointment rescheduled successfully",
        "oldDate": old_date.isoformat(),
        "oldTime": old_time.strftime("%H:%M"),
        "newDate": new_date.isoformat(),
        "newTime": new_time.strftime("%H:%M"),
    }
    return summary, notice


async def notify_reschedule_safely(notice: RescheduleNotice) -> Optional[dict]:
    """Background task: send reschedule notifications, swallowing any failure"""
    return await notify_safely(send_reschedule_notifications, notice=notice)
