"""Billing repository - Database operations for subscriptions, profiles and payments"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from ...models import Payment, PaymentStatus, Plan, Profile, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class BillingRepository:
    """
    Repository for billing database operations

    Write helpers stage changes (flush) and leave the commit to the caller so
    a subscription row and its profile mirror land in one transaction.
    """

    @staticmethod
    def get_profile(db: Session, user_id: str) -> Optional[Profile]:
        return db.query(Profile).filter(Profile.id == user_id).first()

    @staticmethod
    def get_active_plan(db: Session) -> Optional[Plan]:
        return db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.id.asc()).first()

    @staticmethod
    def get_plan_by_reveniu_id(db: Session, reveniu_plan_id) -> Optional[Plan]:
        if reveniu_plan_id is None:
            return None
        return db.query(Plan).filter(Plan.reveniu_plan_id == str(reveniu_plan_id)).first()

    @staticmethod
    def get_subscription_by_user(db: Session, user_id: str) -> Optional[Subscription]:
        return db.query(Subscription).filter(Subscription.user_id == user_id).first()

    @staticmethod
    def upsert_subscription(db: Session, user_id: str, **values) -> Subscription:
        """
        Insert or update the single subscription row keyed on user_id

        A concurrent insert for the same user loses on the unique key; the
        loser rolls back and applies its values to the winner's row. Call this
        before staging any other write in the same transaction.
        """
        subscription = BillingRepository.get_subscription_by_user(db, user_id)

        if subscription is None:
            subscription = Subscription(user_id=user_id, **values)
            db.add(subscription)
            try:
                db.flush()
                return subscription
            except IntegrityError:
                db.rollback()
                logger.info(f"🔄 Concurrent subscription insert for user {user_id}, updating instead")
                subscription = (
                    db.query(Subscription).filter(Subscription.user_id == user_id).one()
                )

        for key, value in values.items():
            setattr(subscription, key, value)
        db.flush()
        return subscription

    @staticmethod
    def set_profile_subscription_status(db: Session, user_id: str, status: str) -> bool:
        """Stage the denormalized mirror; False when the profile does not exist"""
        affected = (
            db.query(Profile)
            .filter(Profile.id == user_id)
            .update({"subscription_status": status}, synchronize_session=False)
        )
        return affected == 1

    @staticmethod
    def list_trial_profiles(db: Session, created_before: datetime) -> list[Profile]:
        """Profiles still on trial and created at or before ``created_before``"""
        return (
            db.query(Profile)
            .filter(
                Profile.subscription_status == SubscriptionStatus.TRIAL.value,
                Profile.created_at <= created_before,
            )
            .order_by(Profile.created_at.asc())
            .all()
        )

    @staticmethod
    def expire_trial(db: Session, user_id: str) -> bool:
        """
        trial → expired on the profile and its subscription row, if any

        Conditioned on the current status, so a concurrent run or an activation
        that got there first is left untouched. Returns True when the profile
        was moved by this call.
        """
        expired = SubscriptionStatus.EXPIRED.value
        trial = SubscriptionStatus.TRIAL.value

        moved = (
            db.query(Profile)
            .filter(Profile.id == user_id, Profile.subscription_status == trial)
            .update({"subscription_status": expired}, synchronize_session=False)
        )
        if moved:
            db.query(Subscription).filter(
                Subscription.user_id == user_id, Subscription.status == trial
            ).update({"status": expired}, synchronize_session=False)
        db.commit()
        return moved == 1

    @staticmethod
    def list_subscriptions_with_profile(db: Session) -> list[Subscription]:
        return (
            db.query(Subscription)
            .options(joinedload(Subscription.profile))
            .order_by(Subscription.id.asc())
            .all()
        )

    @staticmethod
    def record_payment(
        db: Session,
        user_id: str,
        reveniu_payment_id: str,
        amount: int,
        status: str,
        payment_date: datetime,
    ) -> Payment:
        """
        Stage a payment keyed on the provider payment id

        A replayed delivery finds the existing row. A payment that was in
        recovery and later succeeded is upgraded to approved; nothing moves
        the other way.
        """
        payment = (
            db.query(Payment).filter(Payment.reveniu_payment_id == reveniu_payment_id).first()
        )
        if payment is None:
            payment = Payment(
                user_id=user_id,
                reveniu_payment_id=reveniu_payment_id,
                amount=amount or 0,
                status=status,
                payment_date=payment_date,
            )
            db.add(payment)
        elif payment.status != status and status == PaymentStatus.APPROVED.value:
            payment.status = status
            payment.amount = amount or payment.amount
            payment.payment_date = payment_date
        db.flush()
        return payment
