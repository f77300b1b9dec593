from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imaginaryverse.core.security import now_utc
from imaginaryverse.db.base import Base
from imaginaryverse.db.types import UTCDateTime

ACTIVE = "active"
GRACE_PERIOD = "grace_period"
CANCELLED = "cancelled"
SERVING_STATUSES = (ACTIVE, GRACE_PERIOD)


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    plan_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("subscription_plans.id"), nullable=False)
    start_date: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    end_date: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    is_trial: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    trial_started_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    payment_method: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default=ACTIVE)
    cancelled_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    renewal_reminder_sent_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    plan_snapshot: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    plan = relationship("Plan", lazy="joined")

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('active','grace_period','cancelled')",
            name="ck_user_subscriptions_status",
        ),
        sa.Index("ix_user_subscriptions_user_status", "user_id", "status"),
        sa.Index("ix_user_subscriptions_end_date", "end_date"),
    )

    @property
    def is_active(self) -> bool:
        return self.status != CANCELLED

    @property
    def is_pending_cancellation(self) -> bool:
        return self.status == ACTIVE and not self.auto_renew and self.cancelled_at is not None
