"""Reveniu service - Integration with the Reveniu subscriptions API

Without REVENIU_API_SECRET the service runs in mock mode: nothing leaves the
process and every result carries ``mock: True``.
"""

import logging
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from ...config import APP_URL, REVENIU_API_SECRET, REVENIU_API_URL, REVENIU_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

SECRET_HEADER = "Reveniu-Secret-Key"

# Reveniu encodes currency and billing frequency as numeric strings
CURRENCY_CODES = {"CLP": "1"}
MONTHLY_FREQUENCY = "3"

MOCK_PLAN_ID = "mock-plan-id"


def prepare_checkout_url(link_url: str, user_id: str, email: Optional[str]) -> str:
    """Add the user's email and id to the plan checkout link so they come back in webhooks"""
    parts = urlsplit(link_url)
    query = dict(parse_qsl(parts.query))
    if email:
        query["email"] = email
    query["external_id"] = user_id
    return urlunsplit(parts._replace(query=urlencode(query)))


class ReveniuService:
    """Service for Reveniu API operations"""

    def __init__(
        self,
        api_secret: Optional[str] = REVENIU_API_SECRET,
        api_url: str = REVENIU_API_URL,
        app_url: str = APP_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_secret = api_secret
        self.api_url = api_url.rstrip("/")
        self.app_url = app_url.rstrip("/")
        self.transport = transport

        if not self.api_secret:
            logger.warning("REVENIU_API_SECRET not set; payment calls run in mock mode")

    def is_available(self) -> bool:
        """True when real provider calls are possible"""
        return bool(self.api_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            headers={SECRET_HEADER: self.api_secret or ""},
            timeout=REVENIU_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    async def get_or_create_plan(self, name: str, price: int, currency: str = "CLP") -> dict:
        """
        Reuse the monthly plan with the same price and currency, or create it

        Returns:
            {"success": True, "plan_id", "link_url", "mock"?} or
            {"success": False, "error"}
        """
        if not self.is_available():
            logger.info(f"📦 [MOCK] Get or create plan {name} ({price} {currency})")
            return {
                "success": True,
                "mock": True,
                "plan_id": MOCK_PLAN_ID,
                "link_url": f"{self.app_url}/dashboard?payment=mock_success",
            }

        currency_code = CURRENCY_CODES.get(currency.upper())
        if not currency_code:
            return {"success": False, "error": f"Unsupported currency: {currency}"}

        try:
            async with self._client() as client:
                existing = await self._find_plan(client, price, currency_code)
                if existing is not None:
                    return await self._plan_detail(client, existing["id"])
                return await self._create_plan(client, name, price, currency_code)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"❌ Reveniu plan lookup failed: {e}")
            return {"success": False, "error": str(e)}

    async def _find_plan(self, client: httpx.AsyncClient, price: int, currency_code: str):
        response = await client.get("/api/v1/plans/")
        if response.status_code != 200:
            logger.error(f"❌ Error listing Reveniu plans: HTTP {response.status_code}")
            return None

        data = response.json()
        plans = data.get("data", []) if isinstance(data, dict) else data
        for plan in plans or []:
            if (
                plan.get("price") == price
                and str(plan.get("currency")) == currency_code
                and str(plan.get("frequency")) == MONTHLY_FREQUENCY
            ):
                logger.info(f"✅ Existing Reveniu plan found: {plan.get('id')}")
                return plan

        logger.info(f"⚠️ No Reveniu plan with price={price} currency={currency_code}")
        return None

    async def _plan_detail(self, client: httpx.AsyncClient, plan_id) -> dict:
        response = await client.get(f"/api/v1/plans/{plan_id}")
        if response.status_code != 200:
            return {"success": False, "error": f"Plan detail failed: HTTP {response.status_code}"}

        detail = response.json()
        if not detail.get("link_url"):
            logger.error(f"❌ Reveniu plan {plan_id} has no link_url (custom link disabled)")
            return {
                "success": False,
                "error": "Plan has no link_url; enable the custom link option in Reveniu",
            }
        return {"success": True, "plan_id": detail.get("id"), "link_url": detail["link_url"]}

    async def _create_plan(
        self, client: httpx.AsyncClient, name: str, price: int, currency_code: str
    ) -> dict:
        response = await client.post(
            "/api/v1/plans/",
            json={
                "title": name,
                "price": price,
                "currency": currency_code,
                "frequency": MONTHLY_FREQUENCY,
                "description": f"Plan mensual - {name}",
                "is_custom_link": True,
                "auto_renew": True,
                "redirect_to": f"{self.app_url}/dashboard?payment=success",
                "redirect_to_failure": f"{self.app_url}/dashboard?payment=cancelled",
            },
        )
        data = response.json()
        if response.status_code not in (200, 201):
            logger.error(f"❌ Reveniu plan creation failed: {data}")
            return {"success": False, "error": data}

        logger.info(f"✅ Reveniu plan created: {data.get('id')}")
        return {"success": True, "plan_id": data.get("id"), "link_url": data.get("link_url")}

    async def create_subscription(self, user_id: str, email: Optional[str], plan: dict) -> dict:
        """
        Build the checkout entry point binding ``plan`` to the user

        Reveniu assigns the subscription id when the user completes checkout;
        it arrives with the subscription_activated webhook, so a live result
        carries ``subscription_id: None``.
        """
        if not self.is_available():
            logger.info(f"📦 [MOCK] Create subscription for user {user_id}")
            return {
                "success": True,
                "mock": True,
                "init_point": f"{self.app_url}/dashboard?payment=mock_success",
                "subscription_id": f"mock-sub-{user_id}",
                "plan_id": plan.get("plan_id", MOCK_PLAN_ID),
            }

        link_url = plan.get("link_url")
        if not link_url:
            return {"success": False, "error": "Plan has no checkout link"}

        return {
            "success": True,
            "init_point": prepare_checkout_url(link_url, user_id, email),
            "subscription_id": None,
            "plan_id": plan.get("plan_id"),
        }

    async def get_subscription(self, subscription_id: str) -> dict:
        """Get subscription details"""
        if not self.is_available():
            logger.info(f"📦 [MOCK] Get subscription {subscription_id}")
            return {
                "success": True,
                "mock": True,
                "subscription": {"id": subscription_id, "status": "active", "metadata": {}},
            }

        try:
            async with self._client() as client:
                response = await client.get(f"/api/v1/subscriptions/{subscription_id}")
            if response.status_code != 200:
                return {
                    "success": False,
                    "error": f"HTTP {response.status_code}",
                    "not_found": response.status_code == 404,
                }
            subscription = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"❌ Failed to get subscription {subscription_id}: {e}")
            return {"success": False, "error": str(e)}

        if not isinstance(subscription, dict):
            return {"success": False, "error": "Unexpected subscription payload"}
        return {"success": True, "subscription": subscription}


# Singleton instance
reveniu_service = ReveniuService()
