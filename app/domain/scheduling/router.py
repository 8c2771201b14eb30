"""Scheduling router - auto-update triggers and rescheduling"""

import logging
from datetime import timezone

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ... import config
from ...database import get_db
from ...models import utcnow
from ...services.job_run_service import AUTO_UPDATE_JOB, ran_within
from ...webhook_security import verify_cron_secret
from .auto_update_service import run_and_record
from .reschedule_service import RescheduleError, notify_reschedule_safely, reschedule_appointment
from .schemas import AutoUpdateResponse, RescheduleRequest, RescheduleResponse, UpdateCounts

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Scheduling"])


def _iso_now() -> str:
    return utcnow().replace(tzinfo=timezone.utc).isoformat()


def _to_response(summary: dict, include_debug: bool = False) -> AutoUpdateResponse:
    total = summary["confirmed"] + summary["completed"] + summary["archived"]
    return AutoUpdateResponse(
        success=True,
        timestamp=_iso_now(),
        duration=f"{summary['durationMs']}ms",
        updates=UpdateCounts(
            confirmed=summary["confirmed"],
            completed=summary["completed"],
            archived=summary["archived"],
            total=total,
        ),
        errors=summary["errors"],
        debug=summary["debug"] if include_debug else None,
    )


# ============================================================================
# AUTO-UPDATE TRIGGERS
# ============================================================================


@router.post(
    "/cron/auto-update-appointments",
    response_model=AutoUpdateResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_auto_update_appointments(
    debug: bool = Query(False), db: Session = Depends(get_db)
):
    """Periodic trigger (external scheduler, Authorization: Bearer <CRON_SECRET>)"""
    logger.info("🔄 Cron: running appointment auto-updates")
    summary = run_and_record(db, trigger="cron")
    return _to_response(summary, include_debug=debug)


@router.post(
    "/auto-update-appointments",
    response_model=AutoUpdateResponse,
    response_model_exclude_none=True,
)
async def client_auto_update_appointments(db: Session = Depends(get_db)):
    """
    Client-triggered run (dashboard load/focus)

    Same rules as the cron trigger. Skipped when the stored last successful
    run is more recent than CLIENT_TRIGGER_MIN_INTERVAL_SECONDS.
    """
    if ran_within(db, AUTO_UPDATE_JOB, config.CLIENT_TRIGGER_MIN_INTERVAL_SECONDS, utcnow()):
        logger.debug("ℹ️ Client auto-update skipped: recent run on record")
        return AutoUpdateResponse(
            success=True,
            timestamp=_iso_now(),
            duration="0ms",
            updates=UpdateCounts(confirmed=0, completed=0, archived=0, total=0),
            errors=[],
            skipped=True,
        )

    summary = run_and_record(db, trigger="client")
    return _to_response(summary)


# ============================================================================
# RESCHEDULING
# ============================================================================


@router.post("/appointments/{appointment_id}/reschedule", response_model=RescheduleResponse)
async def reschedule(
    appointment_id: int,
    body: RescheduleRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Move an appointment; client and professional are notified afterwards"""
    try:
        summary, notice = reschedule_appointment(db, appointment_id, body.new_date, body.new_time)
    except RescheduleError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message) from e

    background_tasks.add_task(notify_reschedule_safely, notice)
    return summary
