from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from imaginaryverse.core.security import now_utc
from imaginaryverse.db.base import Base
from imaginaryverse.db.types import UTCDateTime

COMPLETED = "completed"
CANCELLED = "cancelled"
GRACE_PERIOD = "grace_period"
LIVE_STATUSES = (COMPLETED, GRACE_PERIOD)


class PaymentRecord(Base):
    __tablename__ = "payment_records"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    plan_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("subscription_plans.id"), nullable=False)
    payment_method: Mapped[str] = mapped_column(sa.Text, nullable=False)
    transaction_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    original_transaction_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    product_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    platform: Mapped[str] = mapped_column(sa.Text, nullable=False)
    receipt_data: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default=COMPLETED)
    amount: Mapped[float] = mapped_column(sa.Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    plan_snapshot: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    cancelled_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_type: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    expiry_date: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    last_checked: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint("platform IN ('ios','android','stripe')", name="ck_payment_records_platform"),
        sa.CheckConstraint(
            "status IN ('completed','cancelled','grace_period')",
            name="ck_payment_records_status",
        ),
        sa.UniqueConstraint("transaction_id", "plan_id", name="uq_payment_records_transaction_plan"),
        sa.Index("ix_payment_records_user_platform_created", "user_id", "platform", sa.text("created_at DESC")),
        sa.Index("ix_payment_records_original_transaction", "original_transaction_id"),
    )
