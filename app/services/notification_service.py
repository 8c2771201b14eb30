"""
Unified Notification Service
Handles both email and WhatsApp notifications for lifecycle events.

Every send is best-effort: bounded by NOTIFICATION_TIMEOUT_SECONDS, never
raises, and reports {"success", "mock"?, "error"?} so callers can log a
failure without undoing the state change that triggered it.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Awaitable, Callable, Optional

from .. import config
from ..email_service import send_email
from .whatsapp_service import send_whatsapp_message

logger = logging.getLogger(__name__)


class Recipient(str, enum.Enum):
    CLIENT = "client"
    PROFESSIONAL = "professional"


@dataclass(frozen=True)
class RescheduleNotice:
    """Everything a reschedule message needs, captured before the commit"""

    appointment_id: int
    client_name: str
    client_email: Optional[str]
    client_phone: Optional[str]
    professional_name: str
    professional_email: Optional[str]
    professional_phone: Optional[str]
    business_name: str
    service_name: str
    old_date: date
    old_time: time
    new_date: date
    new_time: time


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def format_time(value: time) -> str:
    return value.strftime("%H:%M")


async def send_with_timeout(
    send: Awaitable[dict], channel: str, timeout: Optional[float] = None
) -> dict:
    """Await a channel send, converting timeouts and exceptions into a failed result"""
    limit = timeout if timeout is not None else config.NOTIFICATION_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(send, timeout=limit)
    except asyncio.TimeoutError:
        logger.warning(f"⚠️ {channel} notification timed out after {limit}s")
        return {"success": False, "error": f"Timed out after {limit}s"}
    except Exception as e:
        logger.warning(f"⚠️ {channel} notification failed: {e}")
        return {"success": False, "error": str(e)}


async def send_notification(
    email: Optional[str],
    phone: Optional[str],
    subject: str,
    body: str,
    notification_type: str,
) -> dict:
    """
    Send the same message by email and WhatsApp

    Args:
        email: Recipient email address
        phone: Recipient phone number
        subject: Email subject
        body: Plain text body, used for both channels
        notification_type: Type of notification (for logging)

    Returns:
        Dict with the per-channel results; a channel without an address is None
    """
    result = {"email": None, "whatsapp": None}

    if email:
        logger.info(f"📧 Sending {notification_type} email to {email}")
        html = "<br>".join(body.splitlines())
        result["email"] = await send_with_timeout(send_email(email, subject, html), "Email")
    else:
        logger.debug(f"⚠️ No email address for {notification_type} notification")

    if phone:
        logger.info(f"📱 Sending {notification_type} WhatsApp to {phone}")
        result["whatsapp"] = await send_with_timeout(
            send_whatsapp_message(phone, body), "WhatsApp"
        )
    else:
        logger.debug(f"⚠️ No phone number for {notification_type} WhatsApp")

    for channel, outcome in result.items():
        if outcome and not outcome.get("success"):
            logger.warning(f"⚠️ {notification_type} {channel} not sent: {outcome.get('error')}")

    return result


def build_reschedule_message(recipient: Recipient, notice: RescheduleNotice) -> tuple[str, str]:
    """Subject and body for one side of a reschedule"""
    old_slot = f"{format_date(notice.old_date)} a las {format_time(notice.old_time)}"
    new_slot = f"{format_date(notice.new_date)} a las {format_time(notice.new_time)}"

    if recipient is Recipient.CLIENT:
        subject = f"Tu cita con {notice.business_name} fue reagendada"
        body = (
            f"Hola {notice.client_name},\n"
            f"Tu cita de {notice.service_name} fue movida.\n"
            f"Antes: {old_slot}\n"
            f"Ahora: {new_slot}"
        )
    elif recipient is Recipient.PROFESSIONAL:
        subject = f"Cita reagendada: {notice.client_name}"
        body = (
            f"Hola {notice.professional_name},\n"
            f"La cita de {notice.client_name} ({notice.service_name}) fue reagendada.\n"
            f"Antes: {old_slot}\n"
            f"Ahora: {new_slot}"
        )
    else:
        raise ValueError(f"Unhandled recipient: {recipient}")

    return subject, body


def recipient_contact(
    recipient: Recipient, notice: RescheduleNotice
) -> tuple[Optional[str], Optional[str]]:
    if recipient is Recipient.CLIENT:
        return notice.client_email, notice.client_phone
    elif recipient is Recipient.PROFESSIONAL:
        return notice.professional_email, notice.professional_phone
    raise ValueError(f"Unhandled recipient: {recipient}")


async def send_reschedule_notifications(notice: RescheduleNotice) -> dict:
    """Notify both sides of a reschedule; results keyed by recipient"""
    results = {}
    for recipient in Recipient:
        email, phone = recipient_contact(recipient, notice)
        subject, body = build_reschedule_message(recipient, notice)
        results[recipient.value] = await send_notification(
            email=email,
            phone=phone,
            subject=subject,
            body=body,
            notification_type=f"reschedule_{recipient.value}",
        )
    logger.info(f"📨 Reschedule notifications processed for appointment {notice.appointment_id}")
    return results


async def send_trial_expired_notification(email: Optional[str], name: Optional[str]) -> dict:
    body = (
        f"Hola {name or ''},\n"
        f"Tu periodo de prueba de {config.TRIAL_DAYS} días terminó.\n"
        f"Activa tu suscripción en {config.APP_URL}/dashboard/subscription para seguir "
        f"recibiendo reservas."
    )
    return await send_notification(
        email=email,
        phone=None,
        subject="Tu periodo de prueba terminó",
        body=body,
        notification_type="trial_expired",
    )


async def send_subscription_activated_notification(
    email: Optional[str], name: Optional[str], renewal_date: datetime
) -> dict:
    body = (
        f"Hola {name or ''},\n"
        f"Tu suscripción al plan {config.PLAN_NAME} está activa.\n"
        f"Próxima renovación: {format_date(renewal_date.date())}"
    )
    return await send_notification(
        email=email,
        phone=None,
        subject="Suscripción activada",
        body=body,
        notification_type="subscription_activated",
    )


async def send_payment_succeeded_notification(
    email: Optional[str], name: Optional[str], amount: int, renewal_date: datetime
) -> dict:
    body = (
        f"Hola {name or ''},\n"
        f"Recibimos tu pago de ${amount:,} {config.PLAN_CURRENCY}.\n"
        f"Tu suscripción se renueva el {format_date(renewal_date.date())}"
    )
    return await send_notification(
        email=email,
        phone=None,
        subject="Pago recibido",
        body=body,
        notification_type="payment_succeeded",
    )


async def notify_safely(func: Callable[..., Awaitable[dict]], **kwargs) -> Optional[dict]:
    """Run a notification coroutine as a background task, logging instead of raising"""
    try:
        return await func(**kwargs)
    except Exception as e:
        logger.warning(f"⚠️ Notification {getattr(func, '__name__', func)} failed: {e}")
        return None
