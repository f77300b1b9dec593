"""Subscription service façade.

Composes the catalog, verifier, payment ledger, state machine, credit ledger
and the store reconcilers behind the operations the HTTP layer and the worker
call. Collaborators are injected; defaults are built from ``settings``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from imaginaryverse.core.config import settings
from imaginaryverse.core.errors import (
    PlanNotFoundError,
    PurchaseVerificationError,
    StoreAuthError,
    StoreSyncError,
    SubscriptionPersistenceError,
)
from imaginaryverse.core.security import now_utc
from imaginaryverse.models.plan import Plan
from imaginaryverse.models.subscription import UserSubscription
from imaginaryverse.models.user import User
from imaginaryverse.services.credits import CreditLedger
from imaginaryverse.services.maintenance import MaintenanceService
from imaginaryverse.services.notifications import SubscriptionNotifier
from imaginaryverse.services.payment_ledger import PaymentLedger
from imaginaryverse.services.payment_reversal import PaymentReversalService
from imaginaryverse.services.plan_catalog import APPLE, GOOGLE, PlanCatalog
from imaginaryverse.services.purchase_verifier import PurchaseVerifier, transaction_id_for
from imaginaryverse.services.reconciler import (
    AppleCancellationReconciler,
    CancellationReconciler,
    GoogleCancellationReconciler,
)
from imaginaryverse.services.store_clients import StripeGateway
from imaginaryverse.services.subscriptions import CancelOutcome, SubscriptionStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionResult:
    success: bool
    message: str
    subscription: UserSubscription | None
    action: str


class SubscriptionService:
    def __init__(
        self,
        db: Session,
        *,
        catalog: PlanCatalog | None = None,
        ledger: PaymentLedger | None = None,
        verifier: PurchaseVerifier | None = None,
        credits: CreditLedger | None = None,
        notifier: SubscriptionNotifier | None = None,
        machine: SubscriptionStateMachine | None = None,
        reversal: PaymentReversalService | None = None,
        stripe_gateway: StripeGateway | None = None,
        reconcilers: dict[str, CancellationReconciler] | None = None,
        maintenance: MaintenanceService | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.db = db
        self.clock = clock
        self.catalog = catalog or PlanCatalog(db, clock=clock)
        self.ledger = ledger or PaymentLedger(db)
        self.stripe_gateway = stripe_gateway or StripeGateway()
        self.verifier = verifier or PurchaseVerifier(stripe_gateway=self.stripe_gateway, clock=clock)
        self.credits = credits or CreditLedger(db, clock=clock)
        self.notifier = notifier or SubscriptionNotifier()
        self.machine = machine or SubscriptionStateMachine(
            db,
            catalog=self.catalog,
            credits=self.credits,
            notifier=self.notifier,
            clock=clock,
        )
        self.reversal = reversal or PaymentReversalService(stripe_gateway=self.stripe_gateway)
        if reconcilers is None:
            reconcilers = {
                GOOGLE: GoogleCancellationReconciler(db, machine=self.machine, ledger=self.ledger, clock=clock),
                APPLE: AppleCancellationReconciler(db, machine=self.machine, ledger=self.ledger, clock=clock),
            }
        self.reconcilers = reconcilers
        self.maintenance = maintenance or MaintenanceService(
            db,
            machine=self.machine,
            credits=self.credits,
            ledger=self.ledger,
            clock=clock,
        )

    # user-facing

    def list_plans(self) -> list[Plan]:
        return self.catalog.list_active()

    def get_active_subscription(self, user_id) -> UserSubscription | None:
        self.credits.get_user(user_id)
        return self.machine.get_active(user_id)

    def _replayed(self, user_id, transaction_id: str | None, plan_id) -> SubscriptionResult | None:
        if self.ledger.find_by_transaction(transaction_id, plan_id) is None:
            return None
        logger.info("replayed transaction %s for user %s", transaction_id, user_id)
        return SubscriptionResult(
            success=True,
            message="Already subscribed",
            subscription=self.machine.get_active(user_id),
            action="existing",
        )

    def subscribe(
        self,
        user_id,
        plan_id,
        payment_method: str,
        verification_data: dict | None,
        *,
        is_trial: bool = False,
    ) -> SubscriptionResult:
        data = verification_data or {}
        # Replays return before eligibility runs.
        transaction_id = transaction_id_for(payment_method, data)
        replay = self._replayed(user_id, transaction_id, plan_id)
        if replay is not None:
            return replay

        plan = self.machine.check_eligibility(user_id, plan_id, is_trial=is_trial)

        verification = self.verifier.verify(payment_method, data)
        if not verification.success:
            raise PurchaseVerificationError(
                "Payment verification failed",
                method=payment_method,
                reason=verification.reason,
            )
        if not transaction_id:
            transaction_id = verification.transaction_id
            if not transaction_id:
                raise PurchaseVerificationError(
                    "Payment verification returned no transaction id",
                    method=payment_method,
                    reason="missing_transaction_id",
                )
            replay = self._replayed(user_id, transaction_id, plan.id)
            if replay is not None:
                return replay

        try:
            outcome = self.machine.subscribe(
                user_id,
                plan.id,
                payment_method,
                is_trial=is_trial,
                end_date=verification.expires_date,
            )
            self.ledger.record(
                user_id=user_id,
                plan=plan,
                payment_method=payment_method,
                transaction_id=transaction_id,
                verification_data=data,
                original_transaction_id=verification.original_transaction_id,
                product_id=verification.product_id,
                expiry_date=verification.expires_date,
                now=self.clock(),
            )
            self.db.flush()
        except Exception as exc:
            self.db.rollback()
            if isinstance(exc, IntegrityError):
                # A concurrent call recorded the same transaction first.
                replay = self._replayed(user_id, transaction_id, plan.id)
                if replay is not None:
                    return replay
            logger.exception("subscription write failed after verified payment %s", transaction_id)
            refund_status = self.reversal.reverse(payment_method, data, transaction_id=transaction_id)
            raise SubscriptionPersistenceError(
                "Subscription could not be saved; the payment is being reversed",
                refund_status=refund_status,
            ) from exc

        messages = {
            "upgraded": "Subscription upgraded",
            "trial_started": "Free trial started",
            "created": "Subscription created",
        }
        return SubscriptionResult(
            success=True,
            message=messages.get(outcome.action, "Subscription created"),
            subscription=outcome.subscription,
            action=outcome.action,
        )

    def start_trial(self, user_id, payment_method: str | None) -> SubscriptionResult:
        outcome = self.machine.start_free_trial(user_id, payment_method)
        return SubscriptionResult(
            success=True,
            message="Free trial started",
            subscription=outcome.subscription,
            action=outcome.action,
        )

    def cancel(self, user_id, *, immediate: bool = False, reason: str = "user_requested") -> CancelOutcome:
        self.credits.get_user(user_id)
        return self.machine.cancel_subscription(user_id, immediate=immediate, reason=reason)

    def check_generation_limits(self, user_id, generation_type: str) -> dict:
        result = self.credits.check_generation_limits(user_id, generation_type)
        if result["reason"] == "credits_exhausted":
            user = self.db.get(User, user_id)
            self.notifier.notify(
                user_id,
                "credits_exhausted",
                plan_name=user.plan_name if user is not None else None,
                data={"generationType": generation_type},
            )
        return result

    def record_generation_usage(self, user_id, generation_type: str, count: int = 1) -> int:
        return self.credits.record_generation_usage(user_id, generation_type, count)

    def grant_reward_credits(self, user_id, amount: int | None = None) -> User:
        return self.credits.grant_reward_credits(user_id, amount)

    def create_payment_intent(self, user_id, plan_id) -> dict:
        self.credits.get_user(user_id)
        plan = self.catalog.get_by_id(plan_id)
        if plan is None or not plan.is_active or plan.is_free:
            raise PlanNotFoundError("Plan not found")
        return self.stripe_gateway.create_payment_intent(
            amount_cents=int(round(float(plan.price or 0) * 100)),
            currency=settings.STRIPE_CURRENCY,
            metadata={"user_id": str(user_id), "plan_id": str(plan.id)},
        )

    # scheduled

    def sync_plans(self) -> dict:
        results: dict = {}
        for platform in (GOOGLE, APPLE):
            try:
                results[platform] = self.catalog.sync_from_storefront(platform)
            except StoreSyncError as exc:
                logger.error("plan sync for %s aborted: %s", platform, exc)
                results[platform] = {"error": str(exc)}
        return results

    def check_cancellations(self) -> dict:
        results: dict = {}
        for platform, reconciler in self.reconcilers.items():
            try:
                results[platform] = reconciler.sync_all()
            except (StoreAuthError, NotImplementedError) as exc:
                logger.error("%s cancellation sweep aborted: %s", platform, exc)
                results[platform] = {"error": str(exc)}
        return results

    def force_expire(self, platform: str, store_id: str) -> bool:
        reconciler = self.reconcilers.get(platform)
        if reconciler is None:
            raise ValueError(f"unknown platform {platform!r}")
        return reconciler.force_expire(store_id)

    def process_expired_subscriptions(self) -> dict:
        return self.machine.process_expired_subscriptions()

    def process_grace_period_subscriptions(self) -> dict:
        return self.machine.process_grace_period_subscriptions()

    def sync_local_status(self) -> dict:
        return self.maintenance.sync_local_status()

    def cleanup_orphans(self) -> dict:
        return {
            "subscriptions": self.maintenance.cleanup_orphaned_subscriptions(),
            "payment_records": self.maintenance.cleanup_orphaned_payment_records(),
            "null_end_dates_fixed": self.maintenance.fix_null_end_dates(),
        }

    def reset_free_credits(self) -> int:
        return self.credits.reset_daily_free_credits()
