"""
Email Service using Resend
Without RESEND_API_KEY every send is a mock: logged, flagged and reported as
successful so local and test environments never reach the provider.
"""

import asyncio
import logging
from typing import Optional, Union

import resend

from . import config

logger = logging.getLogger(__name__)


async def send_email(
    to: Union[str, list[str]],
    subject: str,
    html_content: str,
    from_address: Optional[str] = None,
) -> dict:
    """
    Send an email through Resend

    Args:
        to: Recipient email(s)
        subject: Email subject line
        html_content: Rendered body
        from_address: Optional custom from address

    Returns:
        {"success": bool, "mock"?: True, "id"?: str, "error"?: str}
    """
    recipients = [to] if isinstance(to, str) else to
    if not recipients or not all(recipients):
        return {"success": False, "error": "No recipient"}

    if not config.RESEND_API_KEY:
        logger.info(f"📧 [MOCK] Email to {recipients}: {subject}")
        return {"success": True, "mock": True}

    resend.api_key = config.RESEND_API_KEY
    email_data = {
        "from": from_address or config.EMAIL_FROM_ADDRESS,
        "to": recipients,
        "subject": subject,
        "html": html_content,
    }

    try:
        logger.info(f"📧 Sending email via Resend to: {recipients}")
        # The Resend SDK is synchronous
        response = await asyncio.to_thread(resend.Emails.send, email_data)
        email_id = response.get("id") if isinstance(response, dict) else None
        logger.info(f"✅ Email sent successfully via Resend: {email_id}")
        return {"success": True, "id": email_id}
    except Exception as e:
        logger.error(f"❌ Email send error to {recipients}: {e}")
        return {"success": False, "error": str(e)}
