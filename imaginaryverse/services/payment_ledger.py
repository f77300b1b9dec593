from __future__ import annotations

import logging
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Session

from imaginaryverse.models.payment_record import LIVE_STATUSES, PaymentRecord
from imaginaryverse.models.plan import Plan
from imaginaryverse.models.user import User

logger = logging.getLogger(__name__)

METHOD_PLATFORM = {
    "apple": "ios",
    "google_play": "android",
    "google_pay": "android",
    "stripe": "stripe",
}


def platform_for_method(method: str, explicit: str | None = None) -> str:
    if explicit in ("ios", "android", "stripe"):
        return explicit
    return METHOD_PLATFORM.get(method, "android")


def receipt_for(method: str, verification_data: dict) -> str | None:
    if method == "stripe":
        return verification_data.get("paymentIntentId")
    return verification_data.get("receiptData") or verification_data.get("purchaseToken")


class PaymentLedger:
    def __init__(self, db: Session):
        self.db = db

    def find_by_transaction(self, transaction_id: str | None, plan_id) -> PaymentRecord | None:
        if not transaction_id:
            return None
        return self.db.execute(
            sa.select(PaymentRecord)
            .where(PaymentRecord.transaction_id == transaction_id, PaymentRecord.plan_id == plan_id)
            .order_by(PaymentRecord.created_at.desc())
            .limit(1)
        ).scalars().first()

    def find_by_store_id(self, store_id: str) -> PaymentRecord | None:
        """Latest record matching a purchase token or (original) transaction id."""
        return self.db.execute(
            sa.select(PaymentRecord)
            .where(
                sa.or_(
                    PaymentRecord.receipt_data == store_id,
                    PaymentRecord.transaction_id == store_id,
                    PaymentRecord.original_transaction_id == store_id,
                )
            )
            .order_by(PaymentRecord.created_at.desc())
            .limit(1)
        ).scalars().first()

    def record(
        self,
        *,
        user_id,
        plan: Plan,
        payment_method: str,
        transaction_id: str,
        verification_data: dict,
        original_transaction_id: str | None = None,
        product_id: str | None = None,
        expiry_date: datetime | None = None,
        now: datetime | None = None,
    ) -> PaymentRecord:
        row = PaymentRecord(
            user_id=user_id,
            plan_id=plan.id,
            payment_method=payment_method,
            transaction_id=transaction_id,
            original_transaction_id=original_transaction_id,
            product_id=product_id or verification_data.get("productId"),
            platform=platform_for_method(payment_method, verification_data.get("platform")),
            receipt_data=receipt_for(payment_method, verification_data),
            status="completed",
            amount=float(plan.price or 0),
            plan_snapshot=plan.snapshot(),
            expiry_date=expiry_date,
        )
        if now is not None:
            row.created_at = now
        self.db.add(row)
        self.db.flush()
        logger.info("payment recorded user=%s plan=%s tx=%s", user_id, plan.id, transaction_id)
        return row

    def latest_per_user(self, platform: str) -> list[PaymentRecord]:
        """Newest record per user on ``platform``."""
        rows = self.db.execute(
            sa.select(PaymentRecord)
            .where(PaymentRecord.platform == platform)
            .order_by(PaymentRecord.user_id, PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
        ).scalars()
        latest: dict = {}
        for row in rows:
            latest.setdefault(row.user_id, row)
        return list(latest.values())

    def has_other_live_record(self, record: PaymentRecord, now: datetime) -> bool:
        other = self.db.execute(
            sa.select(PaymentRecord.id)
            .where(
                PaymentRecord.user_id == record.user_id,
                PaymentRecord.platform == record.platform,
                PaymentRecord.id != record.id,
                PaymentRecord.status.in_(LIVE_STATUSES),
                PaymentRecord.expiry_date.is_not(None),
                PaymentRecord.expiry_date > now,
            )
            .limit(1)
        ).first()
        return other is not None

    def delete_orphans(self) -> int:
        orphan_ids = list(
            self.db.execute(
                sa.select(PaymentRecord.id)
                .outerjoin(User, User.id == PaymentRecord.user_id)
                .where(User.id.is_(None))
            ).scalars()
        )
        if orphan_ids:
            self.db.execute(sa.delete(PaymentRecord).where(PaymentRecord.id.in_(orphan_ids)))
        return len(orphan_ids)
