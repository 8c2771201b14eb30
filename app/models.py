import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Time,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class SubscriptionStatus(str, enum.Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    APPROVED = "approved"
    IN_RECOVERY = "in_recovery"


class Profile(Base):
    __tablename__ = "profiles"

    # Same value as the auth provider's user id
    id = Column(String(64), primary_key=True, index=True)
    name = Column(String(255), nullable=True)
    email = Column(String(255), index=True, nullable=True)
    whatsapp = Column(String(50), nullable=True)  # E.164, used for chat notifications
    business_name = Column(String(255), nullable=True)
    auto_confirm = Column(Boolean, default=False, nullable=False)
    # Denormalized mirror of Subscription.status, read on every authorization check
    subscription_status = Column(
        String(20), default=SubscriptionStatus.TRIAL.value, nullable=False, index=True
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)

    services = relationship("Service", back_populates="profile")
    appointments = relationship("Appointment", back_populates="profile")
    subscription = relationship("Subscription", back_populates="profile", uselist=False)


class Service(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("profiles.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    duration = Column(Integer, nullable=True)  # minutes
    price = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    profile = relationship("Profile", back_populates="services")
    appointments = relationship("Appointment", back_populates="service")


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("profiles.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=True)
    # Business-local date and time, no offset stored
    date = Column(Date, nullable=False, index=True)
    time = Column(Time, nullable=False)
    status = Column(
        String(20), default=AppointmentStatus.PENDING.value, nullable=False, index=True
    )  # pending, confirmed, completed, cancelled, archived
    client_name = Column(String(255), nullable=False)
    client_email = Column(String(255), nullable=True)
    client_phone = Column(String(50), nullable=True)
    completed_at = Column(DateTime, nullable=True)  # Stamped by the auto-update engine
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    profile = relationship("Profile", back_populates="appointments")
    service = relationship("Service", back_populates="appointments")


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Integer, nullable=False)
    currency = Column(String(3), default="CLP", nullable=False)
    period = Column(String(20), default="monthly", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    reveniu_plan_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    # One authoritative row per user; every write is an upsert on this key
    user_id = Column(String(64), ForeignKey("profiles.id"), unique=True, nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    reveniu_id = Column(String(100), nullable=True, index=True)
    status = Column(String(20), default=SubscriptionStatus.TRIAL.value, nullable=False)
    start_date = Column(DateTime, nullable=True)
    renewal_date = Column(DateTime, nullable=True)
    trial = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    profile = relationship("Profile", back_populates="subscription")
    plan = relationship("Plan")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("profiles.id"), nullable=False, index=True)
    # Provider buy order; unique so replayed webhooks insert once
    reveniu_payment_id = Column(String(100), unique=True, nullable=False)
    amount = Column(Integer, default=0, nullable=False)
    status = Column(String(20), nullable=False)  # approved, in_recovery
    payment_date = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)


class JobRun(Base):
    __tablename__ = "job_runs"

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String(100), nullable=False, index=True)
    trigger = Column(String(20), nullable=False)  # cron, client, worker
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False)  # success, failed
    stats = Column(JSON, nullable=True)
