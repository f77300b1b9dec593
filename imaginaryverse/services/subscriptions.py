"""Subscription state machine.

One mutable ``UserSubscription`` per user carries the current plan. States:

    none -> active -> grace_period -> cancelled
                   -> cancelled
    cancelled -> active (a new purchase opens a new record)

``none`` and ``cancelled`` both leave the user on the Free plan. A paid record
keeps its paid ``plan_id`` until service actually ends; only then is it
re-pointed to Free.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

import sqlalchemy as sa
from sqlalchemy.orm import Session

from imaginaryverse.core.config import settings
from imaginaryverse.core.errors import PlanNotFoundError, SubscriptionConflictError, TrialNotAllowedError
from imaginaryverse.core.security import now_utc
from imaginaryverse.models.plan import Plan
from imaginaryverse.models.subscription import ACTIVE, CANCELLED, GRACE_PERIOD, SERVING_STATUSES, UserSubscription
from imaginaryverse.models.user import User
from imaginaryverse.services.credits import CreditLedger
from imaginaryverse.services.notifications import SubscriptionNotifier
from imaginaryverse.services.plan_catalog import PlanCatalog

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end(plan_type: str, start: datetime) -> datetime:
    if plan_type in ("basic", "trial"):
        return start + timedelta(days=7)
    if plan_type == "standard":
        return add_months(start, 1)
    if plan_type in ("premium", "free"):
        return add_months(start, 12)
    return add_months(start, 1)


class RenewalCharger(Protocol):
    def charge(self, subscription: UserSubscription, plan: Plan) -> bool:
        ...


class AssumeRenewalPaid:
    """Store-managed renewals are charged by the store; the reconciler corrects misses."""

    def charge(self, subscription: UserSubscription, plan: Plan) -> bool:
        return True


@dataclass(frozen=True)
class SubscribeOutcome:
    subscription: UserSubscription
    action: str


@dataclass(frozen=True)
class CancelOutcome:
    subscription: UserSubscription | None
    changed: bool
    message: str


class SubscriptionStateMachine:
    def __init__(
        self,
        db: Session,
        *,
        catalog: PlanCatalog,
        credits: CreditLedger,
        notifier: SubscriptionNotifier,
        charger: RenewalCharger | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.db = db
        self.catalog = catalog
        self.credits = credits
        self.notifier = notifier
        self.charger = charger or AssumeRenewalPaid()
        self.clock = clock

    # lookups

    def get_active(self, user_id) -> UserSubscription | None:
        return self.db.execute(
            sa.select(UserSubscription)
            .where(UserSubscription.user_id == user_id, UserSubscription.status.in_(SERVING_STATUSES))
            .order_by(UserSubscription.start_date.desc(), UserSubscription.created_at.desc())
            .limit(1)
        ).scalars().first()

    def list_for_user(self, user_id) -> list[UserSubscription]:
        return list(
            self.db.execute(
                sa.select(UserSubscription)
                .where(UserSubscription.user_id == user_id)
                .order_by(UserSubscription.start_date.desc())
            ).scalars()
        )

    def has_used_trial(self, user_id) -> bool:
        return any(
            sub.is_trial or sub.trial_started_at is not None or (sub.plan_snapshot or {}).get("type") == "trial"
            for sub in self.list_for_user(user_id)
        )

    # helpers

    def _assign_plan(self, sub: UserSubscription, plan: Plan) -> None:
        sub.plan = plan
        sub.plan_id = plan.id
        sub.plan_snapshot = plan.snapshot()

    def _end_service(self, sub: UserSubscription, user: User | None, *, reason: str, event: str | None) -> None:
        now = self.clock()
        paid_name = (sub.plan_snapshot or {}).get("name") or (sub.plan.name if sub.plan else None)
        free = self.catalog.ensure_free_plan()
        sub.status = CANCELLED
        sub.auto_renew = False
        sub.cancelled_at = sub.cancelled_at or now
        sub.cancellation_reason = sub.cancellation_reason or reason
        sub.updated_at = now
        self._assign_plan(sub, free)
        if user is not None:
            self.credits.downgrade_to_free(user, free, reason=reason)
        if event:
            self.notifier.notify(sub.user_id, event, plan_name=paid_name)

    def repair_duplicates(self, user_id, keep: UserSubscription | None = None) -> int:
        """Keep one serving record per user (``keep`` or the newest); cancel the rest."""
        serving = [s for s in self.list_for_user(user_id) if s.status in SERVING_STATUSES]
        if len(serving) <= 1:
            return 0
        keeper = keep or serving[0]
        now = self.clock()
        repaired = 0
        for sub in serving:
            if sub.id == keeper.id:
                continue
            sub.status = CANCELLED
            sub.auto_renew = False
            sub.cancelled_at = sub.cancelled_at or now
            sub.cancellation_reason = "duplicate"
            sub.updated_at = now
            repaired += 1
        logger.warning("cancelled %s duplicate subscriptions for user %s", repaired, user_id)
        return repaired

    # transitions

    def check_eligibility(self, user_id, plan_id, *, is_trial: bool = False) -> Plan:
        """Raise unless ``user_id`` may take ``plan_id`` right now."""
        self.credits.get_user(user_id)
        plan = self.catalog.get_by_id(plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFoundError("Plan not found")
        if plan.is_free:
            raise SubscriptionConflictError("The Free plan cannot be purchased")
        if is_trial:
            if plan.type != "trial":
                raise TrialNotAllowedError("Selected plan is not a trial plan")
            if self.has_used_trial(user_id):
                raise TrialNotAllowedError("Free trial already used")
            if self.get_active(user_id) is not None:
                raise TrialNotAllowedError("Free trial is not available while a subscription is active")
        return plan

    def subscribe(
        self,
        user_id,
        plan_id,
        payment_method: str,
        *,
        is_trial: bool = False,
        end_date: datetime | None = None,
    ) -> SubscribeOutcome:
        plan = self.check_eligibility(user_id, plan_id, is_trial=is_trial)
        user = self.credits.get_user(user_id)
        active = self.get_active(user_id)

        now = self.clock()
        if end_date is None or end_date <= now:
            end_date = period_end(plan.type, now)
        if active is not None and not is_trial:
            self._assign_plan(active, plan)
            active.start_date = now
            active.end_date = end_date
            active.status = ACTIVE
            active.is_trial = False
            active.auto_renew = True
            active.cancelled_at = None
            active.cancellation_reason = None
            active.payment_method = payment_method
            active.renewal_reminder_sent_at = None
            active.updated_at = now
            self.credits.apply_plan(user, plan, active, carry_over=True)
            self.repair_duplicates(user_id, keep=active)
            self.notifier.notify(user_id, "upgraded", plan_name=plan.name)
            logger.info("user %s upgraded to plan %s", user_id, plan.id)
            return SubscribeOutcome(subscription=active, action="upgraded")

        sub = UserSubscription(
            user_id=user_id,
            start_date=now,
            end_date=end_date,
            is_trial=is_trial,
            auto_renew=True,
            trial_started_at=now if is_trial else None,
            payment_method=payment_method,
            status=ACTIVE,
            created_at=now,
            updated_at=now,
        )
        self._assign_plan(sub, plan)
        self.db.add(sub)
        self.db.flush()
        self.credits.apply_plan(user, plan, sub, carry_over=False)
        event = "trial_started" if is_trial else "new"
        self.notifier.notify(user_id, event, plan_name=plan.name)
        logger.info("user %s subscribed to plan %s (trial=%s)", user_id, plan.id, is_trial)
        return SubscribeOutcome(subscription=sub, action="trial_started" if is_trial else "created")

    def start_free_trial(self, user_id, payment_method: str | None) -> SubscribeOutcome:
        if not payment_method:
            raise TrialNotAllowedError("A payment method is required to start a free trial")
        plan = self.catalog.get_by_type("trial")
        if plan is None:
            raise PlanNotFoundError("No trial plan available")
        return self.subscribe(user_id, plan.id, payment_method, is_trial=True)

    def cancel_subscription(self, user_id, *, immediate: bool, reason: str = "user_requested") -> CancelOutcome:
        active = self.get_active(user_id)
        if active is None:
            return CancelOutcome(subscription=None, changed=False, message="No active subscription")

        if immediate:
            user = self.db.get(User, user_id)
            self._end_service(active, user, reason=reason, event="cancelled")
            active.end_date = self.clock()
            return CancelOutcome(subscription=active, changed=True, message="Subscription cancelled")

        if active.cancelled_at is not None and not active.auto_renew:
            return CancelOutcome(subscription=active, changed=False, message="Cancellation already scheduled")
        now = self.clock()
        active.auto_renew = False
        active.cancelled_at = now
        active.cancellation_reason = reason
        active.updated_at = now
        self.notifier.notify(user_id, "pending_cancellation", plan_name=active.plan_snapshot.get("name"))
        return CancelOutcome(
            subscription=active,
            changed=True,
            message="Subscription will not renew and stays active until the end of the period",
        )

    def end_service(self, user_id, *, reason: str, event: str | None = None) -> bool:
        """Force the user onto Free now, whatever the local record says."""
        user = self.db.get(User, user_id)
        active = self.get_active(user_id)
        if active is not None:
            self._end_service(active, user, reason=reason, event=event)
            return True
        if user is None:
            return False
        changed = self.credits.downgrade_to_free(user, self.catalog.ensure_free_plan(), reason=reason)
        if changed and event:
            self.notifier.notify(user_id, event)
        return changed

    def mark_pending_cancellation(self, user_id, *, reason: str, end_date: datetime | None) -> UserSubscription | None:
        active = self.get_active(user_id)
        if active is None:
            return None
        now = self.clock()
        active.auto_renew = False
        active.cancelled_at = active.cancelled_at or now
        active.cancellation_reason = reason
        if end_date is not None:
            active.end_date = end_date
        active.updated_at = now
        return active

    def mark_grace_period(self, user_id, *, reason: str, end_date: datetime | None) -> UserSubscription | None:
        active = self.get_active(user_id)
        if active is None:
            return None
        now = self.clock()
        active.status = GRACE_PERIOD
        active.auto_renew = False
        active.cancelled_at = active.cancelled_at or now
        active.cancellation_reason = reason
        if end_date is not None:
            active.end_date = end_date
        active.updated_at = now
        user = self.db.get(User, user_id)
        if user is not None:
            self.credits.set_subscription_status(user, GRACE_PERIOD)
        return active

    def confirm_active(
        self,
        user_id,
        *,
        plan: Plan | None,
        end_date: datetime | None,
        auto_renew: bool,
        payment_method: str,
    ) -> tuple[UserSubscription | None, bool]:
        """Mirror a store-confirmed active subscription. Returns (record, credits_refreshed)."""
        user = self.db.get(User, user_id)
        if user is None:
            return (None, False)
        now = self.clock()
        sub = self.get_active(user_id)
        expiry_changed = False
        created = False
        if sub is None:
            if plan is None or plan.is_free:
                return (None, False)
            sub = UserSubscription(
                user_id=user_id,
                start_date=now,
                end_date=end_date or period_end(plan.type, now),
                is_trial=False,
                payment_method=payment_method,
                created_at=now,
            )
            self._assign_plan(sub, plan)
            self.db.add(sub)
            created = True
            logger.info("recreated missing subscription record for user %s", user_id)
        else:
            previous_end = sub.end_date
            expiry_changed = previous_end is not None and end_date is not None and previous_end != end_date
            if plan is not None and not plan.is_free and sub.plan_id != plan.id:
                self._assign_plan(sub, plan)
        sub.status = ACTIVE
        sub.auto_renew = auto_renew
        if auto_renew:
            sub.cancelled_at = None
            sub.cancellation_reason = None
        if end_date is not None:
            sub.end_date = end_date
        sub.updated_at = now
        self.db.flush()
        current_plan = sub.plan or plan
        if created:
            self.credits.apply_plan(user, current_plan, sub, carry_over=False)
            return (sub, True)
        refreshed = self.credits.refresh_for_active(user, current_plan, sub, expiry_changed=expiry_changed)
        return (sub, refreshed)

    # periodic sweeps

    def process_expired_subscriptions(self) -> dict:
        now = self.clock()
        result = {"processed": 0, "reminded": 0, "renewed": 0, "expired": 0, "payment_failed": 0}
        subs = self.db.execute(
            sa.select(UserSubscription)
            .where(UserSubscription.status == ACTIVE, UserSubscription.end_date.is_not(None))
            .order_by(UserSubscription.end_date.asc())
        ).scalars().all()
        for sub in subs:
            result["processed"] += 1
            plan = sub.plan
            if sub.end_date > now:
                if (
                    sub.auto_renew
                    and not sub.is_trial
                    and sub.end_date - now <= timedelta(days=settings.RENEWAL_REMINDER_DAYS)
                    and (sub.renewal_reminder_sent_at is None or sub.renewal_reminder_sent_at < sub.start_date)
                ):
                    sub.renewal_reminder_sent_at = now
                    self.notifier.notify(sub.user_id, "renewal_reminder", plan_name=plan.name if plan else None)
                    result["reminded"] += 1
                continue

            # user-cancelled paid records are handled by the grace sweep
            if sub.cancelled_at is not None and not sub.is_trial:
                continue

            user = self.db.get(User, sub.user_id)
            if sub.is_trial:
                self._end_service(sub, user, reason="trial_expired", event="trial_expired")
                result["expired"] += 1
            elif not sub.auto_renew:
                self._end_service(sub, user, reason="expired", event="expired")
                result["expired"] += 1
            elif plan is not None and not plan.is_free and self.charger.charge(sub, plan):
                sub.start_date = now
                sub.end_date = period_end(plan.type, now)
                sub.plan_snapshot = plan.snapshot()
                sub.renewal_reminder_sent_at = None
                sub.updated_at = now
                if user is not None:
                    self.credits.apply_plan(user, plan, sub, carry_over=False)
                self.notifier.notify(sub.user_id, "renewed", plan_name=plan.name)
                result["renewed"] += 1
            else:
                self._end_service(sub, user, reason="payment_failed", event="payment_failed")
                result["payment_failed"] += 1
        return result

    def process_grace_period_subscriptions(self) -> dict:
        now = self.clock()
        grace = timedelta(days=settings.GRACE_PERIOD_DAYS)
        result = {"processed": 0, "entered": 0, "ended": 0}
        subs = self.db.execute(
            sa.select(UserSubscription).where(
                UserSubscription.status.in_(SERVING_STATUSES),
                UserSubscription.cancelled_at.is_not(None),
                UserSubscription.is_trial.is_(False),
                UserSubscription.end_date.is_not(None),
                UserSubscription.end_date < now,
            )
        ).scalars().all()
        for sub in subs:
            result["processed"] += 1
            user = self.db.get(User, sub.user_id)
            if now > sub.end_date + grace:
                self._end_service(sub, user, reason="grace_period_ended", event="grace_period_ended")
                result["ended"] += 1
            elif sub.status == ACTIVE:
                sub.status = GRACE_PERIOD
                sub.updated_at = now
                if user is not None:
                    self.credits.set_subscription_status(user, GRACE_PERIOD)
                result["entered"] += 1
        return result
