from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from imaginaryverse.core.security import now_utc
from imaginaryverse.db.base import Base
from imaginaryverse.db.types import UTCDateTime

PLAN_TYPES = ("free", "trial", "basic", "standard", "premium")


class Plan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    description: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    price: Mapped[float] = mapped_column(sa.Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    total_credits: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    image_generation_credits: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    prompt_generation_credits: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    features: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    google_product_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    apple_product_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    billing_period: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint(
            "type IN ('free','trial','basic','standard','premium')",
            name="ck_subscription_plans_type",
        ),
        sa.UniqueConstraint("google_product_id", name="uq_subscription_plans_google_product"),
        sa.UniqueConstraint("apple_product_id", name="uq_subscription_plans_apple_product"),
        sa.Index("ix_subscription_plans_type_active", "type", "is_active"),
    )

    @property
    def is_free(self) -> bool:
        return self.type == "free"

    def snapshot(self) -> dict:
        return {
            "name": self.name or "",
            "type": self.type or "",
            "price": float(self.price or 0),
            "total_credits": int(self.total_credits or 0),
            "image_generation_credits": int(self.image_generation_credits or 0),
            "prompt_generation_credits": int(self.prompt_generation_credits or 0),
            "features": list(self.features or []),
            "version": int(self.version or 1),
        }
