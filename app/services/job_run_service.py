"""
Job run ledger

Every batch run (cron, worker or client-triggered) is recorded so the last
successful run is read from the store instead of process memory. Several
trigger instances can run at once; none of them owns the timestamp.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..models import JobRun, utcnow

logger = logging.getLogger(__name__)

AUTO_UPDATE_JOB = "appointments.auto_update"
TRIAL_EXPIRATION_JOB = "subscriptions.trial_expiration"
STATUS_SYNC_JOB = "subscriptions.status_sync"


def record_job_run(
    db: Session,
    job_name: str,
    trigger: str,
    started_at: datetime,
    stats: dict,
    status: str = "success",
) -> Optional[JobRun]:
    """Persist a run; a ledger failure is logged and never fails the batch"""
    run = JobRun(
        job_name=job_name,
        trigger=trigger,
        started_at=started_at,
        finished_at=utcnow(),
        status=status,
        stats=stats,
    )
    try:
        db.add(run)
        db.commit()
        return run
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Failed to record job run {job_name}: {e}")
        return None


def get_last_successful_run(db: Session, job_name: str) -> Optional[JobRun]:
    return (
        db.query(JobRun)
        .filter(JobRun.job_name == job_name, JobRun.status == "success")
        .order_by(JobRun.started_at.desc())
        .first()
    )


def ran_within(db: Session, job_name: str, seconds: int, now: datetime) -> bool:
    """True when a successful run started less than ``seconds`` before ``now``"""
    last = get_last_successful_run(db, job_name)
    if last is None:
        return False
    return now - last.started_at < timedelta(seconds=seconds)
