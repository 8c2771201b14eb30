"""Subscription service - Reconciles local subscriptions with Reveniu

Every write to a subscription row is an upsert keyed on the user and is
committed together with the profile's denormalized ``subscription_status``.
The sweep at the bottom of this module treats the subscription row as
authoritative and repairs profiles left behind by a failed second write.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from dateutil import parser as date_parser
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import PLAN_CURRENCY, PLAN_NAME, PLAN_PRICE, SUBSCRIPTION_PERIOD_DAYS
from ...models import PaymentStatus, Profile, Subscription, SubscriptionStatus, utcnow
from ...services.job_run_service import STATUS_SYNC_JOB, record_job_run
from ...services.notification_service import (
    send_payment_succeeded_notification,
    send_subscription_activated_notification,
)
from ..scheduling.time_calculator import renewal_date_from
from .repository import BillingRepository
from .reveniu_service import ReveniuService, reveniu_service

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    """Raised by the reconciliation service; ``status_code`` maps it to HTTP"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class WebhookEvent(str, enum.Enum):
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    PAYMENT_SUCCEEDED = "subscription_payment_succeeded"
    PAYMENT_IN_RECOVERY = "subscription_payment_in_recovery"
    RENEWAL_CANCELLED = "subscription_renewal_cancelled"
    DEACTIVATED = "subscription_deactivated"


def iso_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def parse_provider_datetime(value, default: datetime) -> datetime:
    """Provider timestamps as naive UTC; unparseable values fall back to ``default``"""
    if not value:
        return default
    try:
        parsed = date_parser.isoparse(str(value))
    except (ValueError, OverflowError):
        logger.warning(f"⚠️ Unparseable provider timestamp: {value}")
        return default
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_provider_amount(value) -> int:
    """Provider amounts may arrive as numbers or decimal strings; unparseable is 0"""
    if value in (None, ""):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"⚠️ Unparseable provider amount: {value}")
        return 0


def processed(event: WebhookEvent, user_id: str) -> dict:
    return {"status": "processed", "event": event.value, "userId": user_id}


def profile_status_for(status: str, renewal_date: Optional[datetime], now: datetime) -> str:
    """
    Profile mirror value implied by a subscription row

    A cancelled subscription keeps access until its renewal date.
    """
    subscription_status = SubscriptionStatus(status)
    if subscription_status is SubscriptionStatus.CANCELLED:
        if renewal_date is not None and renewal_date > now:
            return SubscriptionStatus.ACTIVE.value
        return SubscriptionStatus.EXPIRED.value
    return subscription_status.value


class SubscriptionService:
    """Service for subscription management"""

    def __init__(self, db: Session, provider: Optional[ReveniuService] = None):
        self.db = db
        self.repo = BillingRepository()
        self.provider = provider or reveniu_service
        # (coroutine function, kwargs) to run once the response is sent
        self.notifications: list[tuple[Callable, dict]] = []

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def _require_profile(self, user_id: str) -> Profile:
        profile = self.repo.get_profile(self.db, user_id)
        if not profile:
            raise SubscriptionError(f"Profile {user_id} not found", status_code=404)
        return profile

    def _stage_activation(
        self, user_id: str, reveniu_id: Optional[str], plan_id: Optional[int], now: datetime
    ) -> Subscription:
        existing = self.repo.get_subscription_by_user(self.db, user_id)
        # A replay of the same provider subscription keeps its original start
        if existing and existing.start_date and existing.reveniu_id == reveniu_id:
            start_date = existing.start_date
        else:
            start_date = now

        values = {
            "reveniu_id": reveniu_id,
            "status": SubscriptionStatus.ACTIVE.value,
            "start_date": start_date,
            "renewal_date": renewal_date_from(now, SUBSCRIPTION_PERIOD_DAYS),
            "trial": False,
        }
        if plan_id is not None:
            values["plan_id"] = plan_id

        subscription = self.repo.upsert_subscription(self.db, user_id, **values)
        self.repo.set_profile_subscription_status(
            self.db, user_id, SubscriptionStatus.ACTIVE.value
        )
        return subscription

    def _commit(self, action: str, user_id: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to {action} for user {user_id}: {e}")
            raise SubscriptionError(f"Failed to {action}", status_code=500) from e

    def activate_subscription(
        self,
        user_id: str,
        reveniu_id: Optional[str],
        plan_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Upsert the user's subscription as active and mirror it on the profile

        Renewal is always now + SUBSCRIPTION_PERIOD_DAYS, so replaying the
        same activation converges on the same single row.
        """
        now = now or utcnow()
        self._require_profile(user_id)

        try:
            subscription = self._stage_activation(user_id, reveniu_id, plan_id, now)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to stage activation for user {user_id}: {e}")
            raise SubscriptionError("Failed to save subscription", status_code=500) from e

        self._commit("save subscription", user_id)
        self.db.refresh(subscription)
        logger.info(
            f"✅ Subscription active for user {user_id} (reveniu_id={reveniu_id}, "
            f"renewal={subscription.renewal_date})"
        )
        return subscription

    def activate_manual(
        self, user_id: Optional[str], reveniu_subscription_id: Optional[str]
    ) -> dict:
        """Emergency activation from trusted administrative input"""
        if not user_id or not reveniu_subscription_id:
            raise SubscriptionError(
                "userId and reveniuSubscriptionId are required", status_code=400
            )

        plan = self.repo.get_active_plan(self.db)
        if not plan:
            raise SubscriptionError("No active plan found", status_code=400)

        subscription = self.activate_subscription(
            user_id, reveniu_subscription_id, plan_id=plan.id
        )
        logger.info(f"🛠️ Manual activation for user {user_id} ({reveniu_subscription_id})")

        return {
            "success": True,
            "message": "Subscription activated manually",
            "subscription": {
                "userId": subscription.user_id,
                "reveniuSubscriptionId": subscription.reveniu_id,
                "status": subscription.status,
                "renewalDate": iso_utc(subscription.renewal_date),
            },
        }

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout(self, user_id: str, email: Optional[str] = None) -> dict:
        """Get or create the provider plan and build the user's checkout entry point"""
        profile = self._require_profile(user_id)
        plan = self.repo.get_active_plan(self.db)

        name = plan.name if plan else PLAN_NAME
        price = plan.price if plan else PLAN_PRICE
        currency = plan.currency if plan else PLAN_CURRENCY

        provider_plan = await self.provider.get_or_create_plan(name, price, currency)
        if not provider_plan.get("success"):
            logger.error(f"❌ Plan lookup failed for user {user_id}: {provider_plan.get('error')}")
            raise SubscriptionError("Payment provider unavailable", status_code=502)

        provider_plan_id = provider_plan.get("plan_id")
        if (
            plan
            and provider_plan_id is not None
            and not provider_plan.get("mock")
            and plan.reveniu_plan_id != str(provider_plan_id)
        ):
            plan.reveniu_plan_id = str(provider_plan_id)
            self._commit("link provider plan", user_id)

        result = await self.provider.create_subscription(
            user_id, email or profile.email, provider_plan
        )
        if not result.get("success"):
            logger.error(f"❌ Checkout failed for user {user_id}: {result.get('error')}")
            raise SubscriptionError("Failed to create subscription", status_code=502)

        logger.info(f"✅ Checkout ready for user {user_id} (mock={bool(result.get('mock'))})")
        return {
            "success": True,
            "mock": bool(result.get("mock")),
            "initPoint": result.get("init_point"),
            "subscriptionId": result.get("subscription_id"),
            "planId": result.get("plan_id"),
        }

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook_event(self, payload: dict, now: Optional[datetime] = None) -> dict:
        """Apply one Reveniu webhook; unknown events are acknowledged and ignored"""
        event = payload.get("event")
        data = payload.get("data") or {}

        try:
            kind = WebhookEvent(event)
        except ValueError:
            logger.info(f"⚠️ Unhandled Reveniu event: {event}")
            return {"status": "ignored", "event": event}

        handlers = {
            WebhookEvent.SUBSCRIPTION_ACTIVATED: self._on_activated,
            WebhookEvent.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            WebhookEvent.PAYMENT_IN_RECOVERY: self._on_payment_in_recovery,
            WebhookEvent.RENEWAL_CANCELLED: self._on_renewal_cancelled,
            WebhookEvent.DEACTIVATED: self._on_deactivated,
        }
        logger.info(f"🔔 Reveniu event {kind.value}: subscription={data.get('subscription_id')}")
        return await handlers[kind](data, now or utcnow())

    async def _resolve_user(self, data: dict, lookup: bool = True) -> tuple[str, dict]:
        """User id from the provider subscription metadata, else the external id"""
        external_id = data.get("subscription_external_id")
        subscription_id = data.get("subscription_id")
        info: dict = {}

        if lookup and subscription_id:
            result = await self.provider.get_subscription(str(subscription_id))
            if result.get("success"):
                info = result.get("subscription") or {}
            else:
                logger.warning(
                    f"⚠️ Could not fetch subscription {subscription_id}: {result.get('error')}"
                )

        user_id = (info.get("metadata") or {}).get("user_id") or external_id
        if not user_id:
            raise SubscriptionError("No user ID in webhook", status_code=400)
        return str(user_id), info

    def _queue_notification(self, func: Callable, **kwargs) -> None:
        self.notifications.append((func, kwargs))

    async def _on_activated(self, data: dict, now: datetime) -> dict:
        user_id, info = await self._resolve_user(data)
        subscription_id = data.get("subscription_id")

        provider_plan_id = info.get("plan_id") or (info.get("plan") or {}).get("id")
        plan = self.repo.get_plan_by_reveniu_id(self.db, provider_plan_id)
        if plan is None:
            plan = self.repo.get_active_plan(self.db)

        subscription = self.activate_subscription(
            user_id,
            str(subscription_id) if subscription_id else None,
            plan_id=plan.id if plan else None,
            now=now,
        )

        profile = subscription.profile
        self._queue_notification(
            send_subscription_activated_notification,
            email=profile.email if profile else None,
            name=(profile.name or profile.business_name) if profile else None,
            renewal_date=subscription.renewal_date,
        )
        return processed(WebhookEvent.SUBSCRIPTION_ACTIVATED, user_id)

    async def _on_payment_succeeded(self, data: dict, now: datetime) -> dict:
        user_id, _ = await self._resolve_user(data)
        profile = self._require_profile(user_id)
        subscription_id = data.get("subscription_id")
        amount = parse_provider_amount(data.get("amount"))
        payment_id = str(data.get("buy_order") or subscription_id)

        try:
            subscription = self._stage_activation(
                user_id, str(subscription_id) if subscription_id else None, None, now
            )
            self.repo.record_payment(
                self.db,
                user_id,
                payment_id,
                amount,
                PaymentStatus.APPROVED.value,
                parse_provider_datetime(data.get("issued_on"), now),
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to stage payment {payment_id} for user {user_id}: {e}")
            raise SubscriptionError("Failed to record payment", status_code=500) from e

        self._commit("record payment", user_id)
        logger.info(f"💳 Payment {payment_id} approved for user {user_id}")

        self._queue_notification(
            send_payment_succeeded_notification,
            email=profile.email,
            name=profile.name or profile.business_name,
            amount=amount,
            renewal_date=subscription.renewal_date,
        )
        return processed(WebhookEvent.PAYMENT_SUCCEEDED, user_id)

    async def _on_payment_in_recovery(self, data: dict, now: datetime) -> dict:
        user_id, _ = await self._resolve_user(data)
        self._require_profile(user_id)
        payment_id = str(data.get("buy_order") or data.get("subscription_id"))

        try:
            self.repo.record_payment(
                self.db, user_id, payment_id, 0, PaymentStatus.IN_RECOVERY.value, now
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise SubscriptionError("Failed to record payment", status_code=500) from e

        self._commit("record payment", user_id)
        # Reveniu keeps retrying; a definitive failure arrives as subscription_deactivated
        logger.warning(
            f"⚠️ Payment {payment_id} in recovery for user {user_id} "
            f"(gateway: {data.get('gateway_response')})"
        )
        return processed(WebhookEvent.PAYMENT_IN_RECOVERY, user_id)

    async def _on_renewal_cancelled(self, data: dict, now: datetime) -> dict:
        user_id, _ = await self._resolve_user(data, lookup=False)
        subscription = self.repo.get_subscription_by_user(self.db, user_id)

        if subscription is None:
            logger.warning(f"⚠️ Renewal cancelled for user {user_id} without a subscription row")
        else:
            # Access continues until renewal_date; the profile mirror stays active
            subscription.status = SubscriptionStatus.CANCELLED.value
            self._commit("cancel renewal", user_id)
            logger.info(
                f"🚫 Renewal cancelled for user {user_id} (by {data.get('cancelled_by')})"
            )
        return processed(WebhookEvent.RENEWAL_CANCELLED, user_id)

    async def _on_deactivated(self, data: dict, now: datetime) -> dict:
        user_id, _ = await self._resolve_user(data, lookup=False)
        subscription = self.repo.get_subscription_by_user(self.db, user_id)

        if subscription is not None:
            subscription.status = SubscriptionStatus.CANCELLED.value
            # Access ends now
            subscription.renewal_date = now
        self.repo.set_profile_subscription_status(
            self.db, user_id, SubscriptionStatus.EXPIRED.value
        )
        self._commit("deactivate subscription", user_id)
        logger.info(f"🚫 Subscription deactivated for user {user_id}")
        return processed(WebhookEvent.DEACTIVATED, user_id)

    # ------------------------------------------------------------------
    # Consistency sweep
    # ------------------------------------------------------------------

    def sync_profile_statuses(self, now: Optional[datetime] = None) -> dict:
        """
        Re-derive every profile mirror from its subscription row

        Each correction is a conditional update on the value read, so a
        concurrent activation is never overwritten with a stale result.
        """
        now = now or utcnow()
        result = {"checked": 0, "corrected": 0, "errors": [], "debug": []}

        try:
            rows = [
                (
                    s.user_id,
                    s.status,
                    s.renewal_date,
                    s.profile.subscription_status if s.profile else None,
                )
                for s in self.repo.list_subscriptions_with_profile(self.db)
            ]
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Error fetching subscriptions for sync: {e}")
            result["errors"].append({"userId": None, "message": str(e)})
            return result

        for user_id, status, renewal_date, mirrored in rows:
            result["checked"] += 1
            if mirrored is None:
                continue
            try:
                expected = profile_status_for(status, renewal_date, now)
            except ValueError:
                result["errors"].append(
                    {"userId": user_id, "message": f"Unknown subscription status '{status}'"}
                )
                continue
            if mirrored == expected:
                continue

            try:
                moved = (
                    self.db.query(Profile)
                    .filter(Profile.id == user_id, Profile.subscription_status == mirrored)
                    .update({"subscription_status": expected}, synchronize_session=False)
                )
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"❌ Failed to sync profile {user_id}: {e}")
                result["errors"].append({"userId": user_id, "message": str(e)})
                continue

            if moved:
                result["corrected"] += 1
                logger.info(
                    f"🔧 Profile {user_id} subscription_status: {mirrored} → {expected} "
                    f"(subscription {status})"
                )
            result["debug"].append(
                {
                    "userId": user_id,
                    "subscriptionStatus": status,
                    "from": mirrored,
                    "to": expected,
                    "applied": bool(moved),
                }
            )

        if result["corrected"] or result["errors"]:
            logger.info(
                f"📊 Profile sync: checked={result['checked']} corrected={result['corrected']} "
                f"errors={len(result['errors'])}"
            )
        return result


def sync_and_record(db: Session, trigger: str, now: Optional[datetime] = None) -> dict:
    """Run the consistency sweep and store it in the job ledger"""
    started_at = utcnow()
    result = SubscriptionService(db).sync_profile_statuses(now=now)
    record_job_run(
        db,
        STATUS_SYNC_JOB,
        trigger,
        started_at,
        stats={
            "checked": result["checked"],
            "corrected": result["corrected"],
            "errors": result["errors"],
        },
    )
    return result
