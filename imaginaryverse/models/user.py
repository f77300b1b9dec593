from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from imaginaryverse.core.security import now_utc
from imaginaryverse.db.base import Base
from imaginaryverse.db.types import UTCDateTime

class User(Base):
    __tablename__ = "users"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    username: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    email: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="active")

    # credit balances
    total_credits: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=4)
    daily_credits: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=4)
    image_generation_credits: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    prompt_generation_credits: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=4)
    used_image_credits: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    used_prompt_credits: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    last_credit_reset: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)

    # plan view, written by the credit ledger only
    is_subscribed: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    subscription_status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="none")
    plan_name: Mapped[str] = mapped_column(sa.Text, nullable=False, default="Free")
    plan_type: Mapped[str] = mapped_column(sa.Text, nullable=False, default="free")
    current_subscription_id: Mapped[sa.Uuid | None] = mapped_column(sa.Uuid, nullable=True)
    subscription_expiry: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    plan_downgraded_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    watermark_enabled: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    has_active_trial: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)

    # rewarded ads
    reward_daily_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    reward_total_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    last_reward_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint("status in ('active','blocked','deleted')", name="ck_user_status"),
        sa.CheckConstraint(
            "subscription_status in ('none','active','grace_period','cancelled')",
            name="ck_user_subscription_status",
        ),
        sa.Index("ix_users_plan_type_reset", "plan_type", "last_credit_reset"),
    )
