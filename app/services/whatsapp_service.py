"""
WhatsApp Cloud API Service
Sends plain text chat messages for appointment events
"""

import logging
import re
from typing import Optional

import httpx

from .. import config

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.facebook.com"


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only, as the Cloud API expects (E.164 without the leading +)"""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    # Shortest valid international number has 8 digits
    if len(digits) < 8:
        return None
    return digits


async def send_whatsapp_message(to_phone: Optional[str], message_body: str) -> dict:
    """
    Send a WhatsApp text message

    Args:
        to_phone: Recipient phone number, any formatting
        message_body: Message content

    Returns:
        {"success": bool, "mock"?: True, "id"?: str, "error"?: str}
    """
    phone = normalize_phone(to_phone)
    if not phone:
        logger.debug(f"No valid phone number provided: {to_phone}")
        return {"success": False, "error": "Invalid or missing phone number"}

    if not config.WHATSAPP_ID or not config.WHATSAPP_TOKEN:
        logger.info(f"📱 [MOCK] WhatsApp to {phone}: {message_body[:60]}")
        return {"success": True, "mock": True}

    url = f"{GRAPH_API_BASE_URL}/{config.WHATSAPP_API_VERSION}/{config.WHATSAPP_ID}/messages"
    payload = {
        "messaging_product": "whatsapp",
        "to": phone,
        "type": "text",
        "text": {"body": message_body},
    }

    try:
        logger.info(f"🚀 Sending WhatsApp message to {phone}")
        async with httpx.AsyncClient() as client:
            response = await client.post(
                url,
                headers={"Authorization": f"Bearer {config.WHATSAPP_TOKEN}"},
                json=payload,
                timeout=10.0,
            )

        logger.info(f"📡 WhatsApp API response status: {response.status_code}")

        if response.status_code in [200, 201]:
            messages = response.json().get("messages") or [{}]
            message_id = messages[0].get("id")
            logger.info(f"✅ WhatsApp message sent to {phone} (id: {message_id})")
            return {"success": True, "id": message_id}

        error = response.json().get("error", {}) if response.content else {}
        error_message = error.get("message", f"HTTP {response.status_code}")
        logger.error(f"❌ WhatsApp API error [{error.get('code')}]: {error_message}")
        return {"success": False, "error": error_message}

    except httpx.HTTPError as e:
        logger.error(f"WhatsApp API error: {str(e)}")
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.error(f"Error sending WhatsApp message: {str(e)}")
        return {"success": False, "error": str(e)}
