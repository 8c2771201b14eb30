"""
Trial expiration

Profiles on ``trial`` whose creation is TRIAL_DAYS or more in the past move
to ``expired`` together with their subscription row. Expiry emails go out
after the scan, each bounded by the notification timeout, and are reported
apart from store errors.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...config import TRIAL_DAYS
from ...models import utcnow
from ...services.job_run_service import TRIAL_EXPIRATION_JOB, record_job_run
from ...services.notification_service import send_trial_expired_notification
from ..scheduling.time_calculator import Clock, is_trial_expired, trial_cutoff
from .repository import BillingRepository

logger = logging.getLogger(__name__)


def _delivered(outcome) -> bool:
    if isinstance(outcome, BaseException) or not outcome:
        return False
    return any(channel and channel.get("success") for channel in outcome.values())


async def check_and_expire_trials(
    db: Session,
    now: Optional[datetime] = None,
    trial_days: int = TRIAL_DAYS,
    notify: bool = True,
) -> dict:
    """
    Expire every trial older than ``trial_days``

    Returns:
        dict: expiredCount, itemized errors, per-profile debug entries and
        notification delivery counts
    """
    clock = Clock.at(now)
    cutoff = trial_cutoff(clock.utc, trial_days)
    result = {
        "expiredCount": 0,
        "errors": [],
        "debug": [],
        "notifications": {"sent": 0, "failed": 0},
        "evaluatedAt": clock.isoformat(),
    }

    try:
        candidates = [
            (p.id, p.email, p.name or p.business_name, p.created_at)
            for p in BillingRepository.list_trial_profiles(db, cutoff)
        ]
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error fetching trial profiles: {e}")
        result["errors"].append({"userId": None, "message": f"Error fetching trials: {e}"})
        return result

    to_notify = []
    for user_id, email, name, created_at in candidates:
        if not is_trial_expired(created_at, clock.utc, trial_days):
            continue

        decision = {
            "userId": user_id,
            "createdAt": created_at.isoformat(),
            "cutoff": cutoff.isoformat(),
            "now": clock.utc.isoformat(),
        }
        try:
            moved = BillingRepository.expire_trial(db, user_id)
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Failed to expire trial for user {user_id}: {e}")
            result["errors"].append({"userId": user_id, "message": str(e)})
            decision["outcome"] = "error"
        else:
            if moved:
                result["expiredCount"] += 1
                decision["outcome"] = "updated"
                if email:
                    to_notify.append((email, name))
                logger.info(f"⏰ Trial expired for user {user_id}: trial → expired")
            else:
                decision["outcome"] = "skipped"
        result["debug"].append(decision)

    if notify and to_notify:
        outcomes = await asyncio.gather(
            *(send_trial_expired_notification(email, name) for email, name in to_notify),
            return_exceptions=True,
        )
        for outcome in outcomes:
            key = "sent" if _delivered(outcome) else "failed"
            result["notifications"][key] += 1

    if result["expiredCount"] or result["errors"]:
        logger.info(
            f"📊 Trial check: expired={result['expiredCount']} "
            f"errors={len(result['errors'])} notified={result['notifications']['sent']}"
        )
    else:
        logger.debug("ℹ️ No trials to expire")

    return result


async def check_trials_and_record(
    db: Session, trigger: str, now: Optional[datetime] = None
) -> dict:
    """Run the trial check and store it in the job ledger"""
    started_at = utcnow()
    result = await check_and_expire_trials(db, now=now)
    record_job_run(
        db,
        TRIAL_EXPIRATION_JOB,
        trigger,
        started_at,
        stats={
            "expiredCount": result["expiredCount"],
            "errors": result["errors"],
            "notifications": result["notifications"],
        },
    )
    return result
