from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


PaymentMethod = Literal["stripe", "google_play", "google_pay", "apple"]
PlanType = Literal["free", "trial", "basic", "standard", "premium"]
SubscriptionStatus = Literal["active", "grace_period", "cancelled"]
GenerationType = Literal["image", "prompt"]


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    type: PlanType
    description: str
    price: float
    total_credits: int
    image_generation_credits: int
    prompt_generation_credits: int
    features: list[str] = Field(default_factory=list)
    version: int
    billing_period: str | None = None
    google_product_id: str | None = None
    apple_product_id: str | None = None


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime | None = None
    is_trial: bool
    auto_renew: bool
    payment_method: str | None = None
    cancelled_at: datetime | None = None
    plan_snapshot: dict = Field(default_factory=dict)


class CreditsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    plan_name: str
    plan_type: PlanType
    subscription_status: str
    is_subscribed: bool
    total_credits: int
    daily_credits: int
    image_generation_credits: int
    prompt_generation_credits: int
    used_image_credits: int
    used_prompt_credits: int
    watermark_enabled: bool
    has_active_trial: bool


class CurrentSubscriptionOut(BaseModel):
    subscription: SubscriptionOut | None = None
    credits: CreditsOut


class SubscribeIn(BaseModel):
    plan_id: UUID
    payment_method: PaymentMethod
    verification_data: dict = Field(default_factory=dict)
    is_trial: bool = False


class SubscribeOut(BaseModel):
    ok: bool = True
    message: str
    action: Literal["created", "upgraded", "trial_started", "existing"]
    subscription: SubscriptionOut | None = None


class TrialIn(BaseModel):
    payment_method: PaymentMethod | None = None


class CancelIn(BaseModel):
    immediate: bool = False
    reason: str = Field(default="user_requested", max_length=255)


class CancelOut(BaseModel):
    ok: bool = True
    changed: bool
    message: str
    subscription: SubscriptionOut | None = None


class GenerationCheckOut(BaseModel):
    allowed: bool
    reason: str | None = None
    remaining: int


class PaymentIntentIn(BaseModel):
    plan_id: UUID


class PaymentIntentOut(BaseModel):
    id: str
    client_secret: str | None = None
    status: str
