"""Billing router - subscriptions, Reveniu webhooks and billing cron jobs"""

import json
import logging
from datetime import timezone

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ...cache import cache
from ...database import get_db
from ...models import utcnow
from ...services.notification_service import notify_safely
from ...webhook_security import compute_payload_hash, verify_cron_secret, verify_reveniu_webhook
from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    ManualActivationRequest,
    ManualActivationResponse,
    StatusSyncResponse,
    TrialCheckResponse,
)
from .subscription_service import SubscriptionError, SubscriptionService, sync_and_record
from .trial_service import check_trials_and_record

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Billing"])

WEBHOOK_DEDUPE_TTL_SECONDS = 86400


def get_subscription_service(db: Session = Depends(get_db)) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(db)


def _iso_now() -> str:
    return utcnow().replace(tzinfo=timezone.utc).isoformat()


def _schedule_notifications(
    service: SubscriptionService, background_tasks: BackgroundTasks
) -> None:
    for func, kwargs in service.notifications:
        background_tasks.add_task(notify_safely, func, **kwargs)
    service.notifications.clear()


# ============================================================================
# SUBSCRIPTION MANAGEMENT
# ============================================================================


@router.post(
    "/subscriptions/activate-manual",
    response_model=ManualActivationResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def activate_subscription_manual(
    body: ManualActivationRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Emergency activation when the provider webhook never arrived"""
    try:
        return service.activate_manual(body.user_id, body.reveniu_subscription_id)
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message) from e


@router.post("/subscriptions/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create the provider checkout entry point for a user"""
    try:
        return await service.create_checkout(body.user_id, body.email)
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message) from e


# ============================================================================
# WEBHOOKS
# ============================================================================


@router.get("/webhooks/reveniu")
async def reveniu_webhook_check():
    """Reveniu pings the endpoint with GET when it is configured"""
    return {"status": "ok"}


@router.post("/webhooks/reveniu")
async def handle_reveniu_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Apply Reveniu subscription lifecycle events

    Headers:
      - 'Reveniu-Secret-Key': shared secret configured in the Reveniu panel
    """
    raw_body = await verify_reveniu_webhook(request)

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.error(f"Failed to parse webhook JSON: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    # Same body delivered twice is processed once (24 hour window)
    idempotency_key = f"webhook_processed:reveniu:{compute_payload_hash(raw_body)}"
    if not cache.add(idempotency_key, True, ttl=WEBHOOK_DEDUPE_TTL_SECONDS):
        logger.info(f"🔄 Reveniu webhook {idempotency_key} already processed, skipping")
        return {"status": "already_processed"}

    # A failed delivery releases its key so the provider's retry gets through
    try:
        result = await service.handle_webhook_event(payload)
    except SubscriptionError as e:
        cache.delete(idempotency_key)
        raise HTTPException(status_code=e.status_code, detail=e.message) from e
    except Exception:
        cache.delete(idempotency_key)
        raise

    _schedule_notifications(service, background_tasks)
    return result


# ============================================================================
# BILLING CRON JOBS
# ============================================================================


@router.post(
    "/cron/check-trial-expiration",
    response_model=TrialCheckResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_check_trial_expiration(db: Session = Depends(get_db)):
    """Expire trials older than TRIAL_DAYS"""
    logger.info("🔄 Cron: checking trial expirations")
    result = await check_trials_and_record(db, trigger="cron")
    return TrialCheckResponse(
        success=True,
        timestamp=_iso_now(),
        expiredCount=result["expiredCount"],
        errors=result["errors"],
        notifications=result["notifications"],
    )


@router.post(
    "/cron/sync-subscription-status",
    response_model=StatusSyncResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_sync_subscription_status(db: Session = Depends(get_db)):
    """Repair profile mirrors that disagree with their subscription row"""
    logger.info("🔄 Cron: syncing profile subscription statuses")
    result = sync_and_record(db, trigger="cron")
    return StatusSyncResponse(
        success=True,
        timestamp=_iso_now(),
        checked=result["checked"],
        corrected=result["corrected"],
        errors=result["errors"],
    )
