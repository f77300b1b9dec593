"""Credit ledger.

Owns every credit and plan-view field on ``User``: balances, used counters,
``last_credit_reset``, ``plan_name``/``plan_type`` and the subscription flags.
Other services go through this class instead of writing those columns.
"""
from __future__ import annotations

import logging
from datetime import datetime, time as dt_time, timedelta
from typing import Callable

import sqlalchemy as sa
from sqlalchemy.orm import Session

from imaginaryverse.core.config import settings
from imaginaryverse.core.errors import CreditsExhaustedError, UserNotFoundError
from imaginaryverse.core.security import now_utc
from imaginaryverse.models.plan import Plan
from imaginaryverse.models.subscription import UserSubscription
from imaginaryverse.models.user import User

logger = logging.getLogger(__name__)

GENERATION_TYPES = {
    "image": ("image_generation_credits", "used_image_credits"),
    "prompt": ("prompt_generation_credits", "used_prompt_credits"),
}


def start_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), dt_time.min, tzinfo=value.tzinfo)


def carry_over_balances(user: User, plan: Plan) -> tuple[int, int, int]:
    """New (total, image, prompt) when moving a paid user onto ``plan``.

    Remaining balances never go below zero, even if usage ran past the grant.
    """
    used_image = int(user.used_image_credits or 0)
    used_prompt = int(user.used_prompt_credits or 0)
    remaining_image = max(0, int(user.image_generation_credits or 0) - used_image)
    remaining_prompt = max(0, int(user.prompt_generation_credits or 0) - used_prompt)
    remaining_total = max(0, int(user.total_credits or 0) - (used_image + used_prompt))
    return (
        remaining_total + int(plan.total_credits or 0),
        remaining_image + int(plan.image_generation_credits or 0),
        remaining_prompt + int(plan.prompt_generation_credits or 0),
    )


class CreditLedger:
    def __init__(self, db: Session, *, clock: Callable[[], datetime] = now_utc):
        self.db = db
        self.clock = clock

    def get_user(self, user_id) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        return user

    def _free_reset(self, user: User) -> None:
        user.total_credits = settings.FREE_TOTAL_CREDITS
        user.daily_credits = settings.FREE_DAILY_CREDITS
        user.image_generation_credits = settings.FREE_IMAGE_CREDITS
        user.prompt_generation_credits = settings.FREE_PROMPT_CREDITS
        user.used_image_credits = 0
        user.used_prompt_credits = 0

    def _set_plan_view(self, user: User, plan: Plan, subscription: UserSubscription | None, status: str) -> None:
        user.plan_name = plan.name
        user.plan_type = plan.type
        user.watermark_enabled = plan.is_free
        user.is_subscribed = not plan.is_free
        user.subscription_status = status
        user.has_active_trial = bool(subscription is not None and subscription.is_trial and not plan.is_free)
        user.current_subscription_id = subscription.id if subscription is not None and not plan.is_free else None
        user.subscription_expiry = subscription.end_date if subscription is not None and not plan.is_free else None

    def apply_plan(
        self,
        user: User,
        plan: Plan,
        subscription: UserSubscription | None = None,
        *,
        carry_over: bool = False,
    ) -> None:
        now = self.clock()
        if plan.is_free:
            self._free_reset(user)
            user.last_credit_reset = now
            self._set_plan_view(user, plan, None, "none" if user.subscription_status == "none" else "cancelled")
            return

        if carry_over and user.plan_type != "free":
            total, image, prompt = carry_over_balances(user, plan)
            logger.info(
                "carry-over for user %s: total=%s image=%s prompt=%s",
                user.id,
                total,
                image,
                prompt,
            )
        else:
            total = int(plan.total_credits or 0)
            image = int(plan.image_generation_credits or 0)
            prompt = int(plan.prompt_generation_credits or 0)

        user.total_credits = total
        user.image_generation_credits = image
        user.prompt_generation_credits = prompt
        user.used_image_credits = 0
        user.used_prompt_credits = 0
        user.daily_credits = 0
        user.last_credit_reset = now
        self._set_plan_view(user, plan, subscription, "active")

    def downgrade_to_free(self, user: User, free_plan: Plan, *, reason: str) -> bool:
        """Move ``user`` onto the Free plan. No-op when already done today."""
        now = self.clock()
        downgraded_at = user.plan_downgraded_at
        if user.plan_type == "free" and downgraded_at is not None and downgraded_at.date() == now.date():
            logger.debug("user %s already downgraded today", user.id)
            return False
        self._free_reset(user)
        user.last_credit_reset = now
        user.plan_downgraded_at = now
        user.cancellation_reason = reason
        self._set_plan_view(user, free_plan, None, "cancelled")
        return True

    def set_subscription_status(self, user: User, status: str) -> None:
        user.subscription_status = status
        user.is_subscribed = status in ("active", "grace_period")

    def refresh_for_active(
        self,
        user: User,
        plan: Plan,
        subscription: UserSubscription | None,
        *,
        expiry_changed: bool,
    ) -> bool:
        """Align the user with a store-confirmed active subscription.

        The grant is refreshed only when the store moved the expiry, the last
        grant is at least a day old and the user is not on Free.
        """
        now = self.clock()
        grant = False
        if user.last_credit_reset is None:
            grant = True
        elif expiry_changed and user.plan_type != "free":
            grant = now - user.last_credit_reset >= timedelta(hours=settings.CREDIT_REFRESH_MIN_HOURS)

        if grant:
            user.total_credits = int(plan.total_credits or 0)
            user.image_generation_credits = int(plan.image_generation_credits or 0)
            user.prompt_generation_credits = int(plan.prompt_generation_credits or 0)
            user.used_image_credits = 0
            user.used_prompt_credits = 0
            user.last_credit_reset = now
        self._set_plan_view(user, plan, subscription, "active")
        return grant

    def reset_daily_free_credits(self) -> int:
        now = self.clock()
        today = start_of_day(now)
        users = self.db.execute(
            sa.select(User).where(
                User.plan_type == "free",
                sa.or_(User.last_credit_reset.is_(None), User.last_credit_reset < today),
            )
        ).scalars().all()
        for user in users:
            self._free_reset(user)
            user.last_credit_reset = now
        if users:
            logger.info("daily free credit reset applied to %s users", len(users))
        return len(users)

    def check_generation_limits(self, user_id, generation_type: str) -> dict:
        fields = GENERATION_TYPES.get(generation_type)
        if fields is None:
            return {"allowed": False, "reason": "invalid_generation_type", "remaining": 0}
        user = self.db.get(User, user_id)
        if user is None:
            return {"allowed": False, "reason": "user_not_found", "remaining": 0}
        credit_field, used_field = fields
        remaining = max(0, int(getattr(user, credit_field) or 0) - int(getattr(user, used_field) or 0))
        if remaining <= 0:
            return {"allowed": False, "reason": "credits_exhausted", "remaining": 0}
        return {"allowed": True, "reason": None, "remaining": remaining}

    def record_generation_usage(self, user_id, generation_type: str, count: int = 1) -> int:
        if count <= 0:
            raise ValueError("count must be positive")
        fields = GENERATION_TYPES.get(generation_type)
        if fields is None:
            raise ValueError(f"invalid generation type {generation_type!r}")
        user = self.get_user(user_id)
        credit_field, used_field = fields
        used = int(getattr(user, used_field) or 0)
        remaining = int(getattr(user, credit_field) or 0) - used
        if remaining < count:
            raise CreditsExhaustedError("Not enough credits")
        setattr(user, used_field, used + count)
        return remaining - count

    def grant_reward_credits(self, user_id, amount: int | None = None) -> User:
        amount = settings.REWARD_AD_CREDITS if amount is None else amount
        now = self.clock()
        user = self.get_user(user_id)
        if user.last_reward_at is None or user.last_reward_at.date() != now.date():
            user.reward_daily_count = 0
        user.daily_credits = int(user.daily_credits or 0) + amount
        user.total_credits = int(user.total_credits or 0) + amount
        user.prompt_generation_credits = int(user.prompt_generation_credits or 0) + amount
        user.reward_daily_count = int(user.reward_daily_count or 0) + 1
        user.reward_total_count = int(user.reward_total_count or 0) + 1
        user.last_reward_at = now
        return user
