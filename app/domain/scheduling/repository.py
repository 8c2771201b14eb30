"""Scheduling repository - Database operations for appointments"""

from datetime import date, datetime, time
from typing import Iterable, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, joinedload

from ...models import Appointment, AppointmentStatus


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def get_by_id(db: Session, appointment_id: int) -> Optional[Appointment]:
        return (
            db.query(Appointment)
            .options(joinedload(Appointment.service), joinedload(Appointment.profile))
            .filter(Appointment.id == appointment_id)
            .first()
        )

    @staticmethod
    def list_by_status_until(
        db: Session, status: AppointmentStatus, last_date: date
    ) -> list[Appointment]:
        """Appointments in ``status`` scheduled on or before ``last_date``"""
        return (
            db.query(Appointment)
            .options(joinedload(Appointment.service))
            .filter(Appointment.status == status.value, Appointment.date <= last_date)
            .order_by(Appointment.date.asc(), Appointment.time.asc())
            .all()
        )

    @staticmethod
    def list_archive_candidates(
        db: Session, completed_before: datetime, last_date: date
    ) -> list[Appointment]:
        """Completed appointments old enough by completed_at, or by date when it is missing"""
        return (
            db.query(Appointment)
            .options(joinedload(Appointment.service))
            .filter(
                Appointment.status == AppointmentStatus.COMPLETED.value,
                or_(
                    Appointment.completed_at <= completed_before,
                    and_(Appointment.completed_at.is_(None), Appointment.date <= last_date),
                ),
            )
            .all()
        )

    @staticmethod
    def compare_and_set_status(
        db: Session,
        appointment_id: int,
        expected: AppointmentStatus,
        new: AppointmentStatus,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """
        UPDATE ... WHERE id = ? AND status = <expected>

        Returns False when another run already moved the row.
        """
        values = {"status": new.value}
        if completed_at is not None:
            values["completed_at"] = completed_at
        affected = (
            db.query(Appointment)
            .filter(Appointment.id == appointment_id, Appointment.status == expected.value)
            .update(values, synchronize_session=False)
        )
        db.commit()
        return affected == 1

    @staticmethod
    def update_date_time(
        db: Session,
        appointment_id: int,
        allowed_statuses: Iterable[str],
        new_date: date,
        new_time: time,
    ) -> bool:
        """
        UPDATE ... SET date, time WHERE id = ? AND status IN <allowed_statuses>

        Returns False when the row left the allowed statuses first.
        """
        affected = (
            db.query(Appointment)
            .filter(
                Appointment.id == appointment_id,
                Appointment.status.in_(list(allowed_statuses)),
            )
            .update({"date": new_date, "time": new_time}, synchronize_session=False)
        )
        db.commit()
        return affected == 1
