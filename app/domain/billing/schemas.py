"""Billing domain schemas - Pydantic models for validation"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ManualActivationRequest(BaseModel):
    """
    Schema for emergency activation

    Both fields are optional here so a missing one is reported as a 400 by
    the service rather than a 422.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId")
    reveniu_subscription_id: Optional[str] = Field(None, alias="reveniuSubscriptionId")

    @field_validator("user_id", "reveniu_subscription_id")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        return v or None


class SubscriptionSummary(BaseModel):
    userId: str
    reveniuSubscriptionId: Optional[str] = None
    status: str
    renewalDate: Optional[str] = None


class ManualActivationResponse(BaseModel):
    success: bool
    message: str
    subscription: SubscriptionSummary


class CheckoutRequest(BaseModel):
    """Schema for starting a subscription checkout"""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    email: Optional[str] = None

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("userId is required")
        return v.strip()


class CheckoutResponse(BaseModel):
    success: bool
    mock: bool
    initPoint: Optional[str] = None
    subscriptionId: Optional[str] = None
    planId: Optional[Any] = None


class TrialCheckResponse(BaseModel):
    success: bool
    timestamp: str
    expiredCount: int
    errors: list[dict[str, Any]]
    notifications: dict[str, int]


class StatusSyncResponse(BaseModel):
    success: bool
    timestamp: str
    checked: int
    corrected: int
    errors: list[dict[str, Any]]
