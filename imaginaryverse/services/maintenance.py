from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

import sqlalchemy as sa
from sqlalchemy.orm import Session

from imaginaryverse.core.security import now_utc
from imaginaryverse.models.subscription import CANCELLED, SERVING_STATUSES, UserSubscription
from imaginaryverse.models.user import User
from imaginaryverse.services.credits import CreditLedger
from imaginaryverse.services.payment_ledger import PaymentLedger
from imaginaryverse.services.subscriptions import SubscriptionStateMachine, period_end

logger = logging.getLogger(__name__)


class MaintenanceService:
    def __init__(
        self,
        db: Session,
        *,
        machine: SubscriptionStateMachine,
        credits: CreditLedger,
        ledger: PaymentLedger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.db = db
        self.machine = machine
        self.credits = credits
        self.ledger = ledger or PaymentLedger(db)
        self.clock = clock

    def cleanup_orphaned_subscriptions(self) -> dict:
        orphan_ids = list(
            self.db.execute(
                sa.select(UserSubscription.id)
                .outerjoin(User, User.id == UserSubscription.user_id)
                .where(User.id.is_(None))
            ).scalars()
        )
        if orphan_ids:
            self.db.execute(sa.delete(UserSubscription).where(UserSubscription.id.in_(orphan_ids)))

        user_ids = self.db.execute(
            sa.select(UserSubscription.user_id)
            .where(UserSubscription.status.in_(SERVING_STATUSES))
            .group_by(UserSubscription.user_id)
            .having(sa.func.count(UserSubscription.id) > 1)
        ).scalars().all()
        duplicates = sum(self.machine.repair_duplicates(user_id) for user_id in user_ids)
        if orphan_ids or duplicates:
            logger.info("subscription cleanup: orphans=%s duplicates=%s", len(orphan_ids), duplicates)
        return {"orphans_deleted": len(orphan_ids), "duplicates_cancelled": duplicates}

    def cleanup_orphaned_payment_records(self) -> dict:
        orphans = self.ledger.delete_orphans()
        if orphans:
            logger.info("payment record cleanup: orphans=%s", orphans)
        return {"orphans_deleted": orphans}

    def fix_null_end_dates(self) -> int:
        subs = self.db.execute(
            sa.select(UserSubscription).where(
                UserSubscription.status.in_(SERVING_STATUSES),
                UserSubscription.end_date.is_(None),
            )
        ).scalars().all()
        for sub in subs:
            plan_type = sub.plan.type if sub.plan is not None else (sub.plan_snapshot or {}).get("type", "standard")
            sub.end_date = period_end(plan_type, sub.start_date)
            sub.updated_at = self.clock()
        if subs:
            logger.info("filled missing end dates on %s subscriptions", len(subs))
        return len(subs)

    def sync_local_status(self) -> dict:
        """Align each user's plan view with their serving subscription record."""
        result = {"checked": 0, "fixed": 0}
        users = self.db.execute(sa.select(User).where(User.status != "deleted")).scalars().all()
        for user in users:
            result["checked"] += 1
            active = self.machine.get_active(user.id)
            if active is not None:
                if user.subscription_status != active.status or user.current_subscription_id != active.id:
                    plan = active.plan
                    if plan is not None and not plan.is_free:
                        self.credits.refresh_for_active(user, plan, active, expiry_changed=False)
                    self.credits.set_subscription_status(user, active.status)
                    result["fixed"] += 1
            elif user.plan_type != "free":
                free = self.machine.catalog.ensure_free_plan()
                self.credits.downgrade_to_free(user, free, reason="no_active_subscription")
                result["fixed"] += 1
            elif user.is_subscribed or user.subscription_status in SERVING_STATUSES:
                self.credits.set_subscription_status(user, CANCELLED)
                result["fixed"] += 1
        if result["fixed"]:
            logger.info("status sync fixed %s of %s users", result["fixed"], result["checked"])
        return result
