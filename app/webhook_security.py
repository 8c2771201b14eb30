"""
Webhook Security Module

Shared-secret verification for the scheduler (cron) endpoints and the
Reveniu webhook:
- Constant-time secret comparison (prevents timing attacks)
- Payload hashing for delivery de-duplication
"""

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from . import config

logger = logging.getLogger(__name__)

REVENIU_SECRET_HEADER = "Reveniu-Secret-Key"


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_payload_hash(payload: bytes) -> str:
    """SHA-256 of the raw body, used as the de-duplication key for deliveries"""
    return hashlib.sha256(payload).hexdigest()


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """
    FastAPI dependency guarding the scheduler endpoints

    Raises:
        HTTPException 500: CRON_SECRET is not configured on the server
        HTTPException 401: missing or mismatching bearer token
    """
    secret = config.CRON_SECRET
    if not secret:
        logger.error("❌ CRON_SECRET not configured; refusing scheduler call")
        raise HTTPException(status_code=500, detail="Cron secret not configured")

    token = extract_bearer_token(authorization)
    if not constant_time_compare(token or "", secret):
        logger.warning("🚫 Unauthorized scheduler call: bad or missing bearer token")
        raise HTTPException(status_code=401, detail="Unauthorized")


async def verify_reveniu_webhook(request: Request) -> bytes:
    """
    Verify the Reveniu shared-secret header and return the raw body

    Verification is skipped, with a warning, when REVENIU_WEBHOOK_SECRET is
    not configured (sandbox setups).
    """
    raw_body = await request.body()
    secret = config.REVENIU_WEBHOOK_SECRET

    if not secret:
        logger.warning("⚠️ REVENIU_WEBHOOK_SECRET not set; accepting webhook without verification")
        return raw_body

    received = request.headers.get(REVENIU_SECRET_HEADER, "")
    if not constant_time_compare(received, secret):
        logger.warning("🚫 Reveniu webhook secret mismatch")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    logger.debug("✅ Reveniu webhook secret verified")
    return raw_body
