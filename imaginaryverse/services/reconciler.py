"""Store reconciliation.

Each pass takes the newest payment record per user for one platform, asks the
store what it currently believes, and pushes the answer through the state
machine and credit ledger. Responses may be stale or contradictory between
passes; convergence is idempotent so repeated polls settle on the store's view.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from imaginaryverse.core.config import settings
from imaginaryverse.core.errors import StoreAuthError, StoreHttpError
from imaginaryverse.core.security import decode_jws_unverified, now_utc
from imaginaryverse.models.payment_record import COMPLETED, PaymentRecord
from imaginaryverse.models.plan import Plan
from imaginaryverse.models.user import User
from imaginaryverse.services.payment_ledger import PaymentLedger, platform_for_method
from imaginaryverse.services.store_clients import (
    AppStoreServerClient,
    GooglePlayClient,
    epoch_ms_to_datetime,
    parse_iso_datetime,
)
from imaginaryverse.services.subscriptions import SubscriptionStateMachine

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


@dataclass(frozen=True)
class StoreStatus:
    final_status: str
    cancellation_type: str
    expiry_time: datetime | None = None
    is_expired: bool = False
    auto_renewing: bool = False
    found: bool = True


def unknown_status(cancellation_type: str) -> StoreStatus:
    return StoreStatus(final_status=UNKNOWN, cancellation_type=cancellation_type, found=False)


def classify(
    *,
    now: datetime,
    expiry_time: datetime | None,
    auto_renewing: bool,
    user_cancelled_at: datetime | None = None,
    refunded: bool = False,
    revoked: bool = False,
    cancel_reason: str | None = None,
    renewing_overrides_expiry: bool = False,
    grace_days: int | None = None,
) -> StoreStatus:
    grace = timedelta(days=settings.GRACE_PERIOD_DAYS if grace_days is None else grace_days)
    is_expired = expiry_time is None or expiry_time < now

    if renewing_overrides_expiry and auto_renewing:
        return StoreStatus("active", "active", expiry_time, False, True)
    if is_expired:
        return StoreStatus("cancelled", "expired", expiry_time, True, auto_renewing)
    if refunded:
        return StoreStatus("cancelled", "refunded", expiry_time, False, auto_renewing)
    if revoked:
        return StoreStatus("cancelled", "revoked", expiry_time, False, auto_renewing)
    if not auto_renewing and user_cancelled_at is not None:
        in_grace = now <= expiry_time + grace
        return StoreStatus("grace_period" if in_grace else "cancelled", "user_cancelled", expiry_time, False, False)
    if cancel_reason:
        return StoreStatus("cancelled", str(cancel_reason), expiry_time, False, auto_renewing)
    return StoreStatus("active", "active", expiry_time, False, auto_renewing)


class CancellationReconciler:
    platform = ""
    label = ""

    def __init__(
        self,
        db: Session,
        *,
        machine: SubscriptionStateMachine,
        ledger: PaymentLedger | None = None,
        clock: Callable[[], datetime] = now_utc,
        sleep: Callable[[float], None] = time.sleep,
        delay: float = 0.0,
    ):
        self.db = db
        self.machine = machine
        self.ledger = ledger or PaymentLedger(db)
        self.clock = clock
        self.sleep = sleep
        self.delay = delay

    def store_id(self, record: PaymentRecord) -> str | None:
        raise NotImplementedError

    def fetch_status(self, record: PaymentRecord, store_id: str) -> StoreStatus:
        raise NotImplementedError

    def not_found_status(self, record: PaymentRecord) -> StoreStatus:
        """Store has no record of the purchase: downgrade only if it is old enough."""
        now = self.clock()
        if record.expiry_date is not None:
            likely_expired = now > record.expiry_date + timedelta(days=settings.NOT_FOUND_EXPIRY_GRACE_DAYS)
        else:
            likely_expired = now > record.created_at + timedelta(days=settings.NOT_FOUND_NO_EXPIRY_DAYS)
        if not likely_expired:
            return unknown_status("not_found")
        return StoreStatus(
            final_status="cancelled",
            cancellation_type="subscription_not_found",
            expiry_time=record.expiry_date,
            is_expired=True,
            auto_renewing=False,
            found=False,
        )

    def _owns(self, user_id) -> bool:
        active = self.machine.get_active(user_id)
        if active is None:
            return True
        return platform_for_method(active.payment_method or "") == self.platform

    def converge(self, record: PaymentRecord, status: StoreStatus) -> bool:
        now = self.clock()
        record.last_checked = now
        if status.final_status == UNKNOWN:
            return False

        record.status = COMPLETED if status.final_status == "active" else status.final_status
        if status.final_status == "cancelled" and record.cancelled_at is None:
            record.cancelled_at = now
        record.cancellation_type = status.cancellation_type
        if status.expiry_time is not None:
            record.expiry_date = status.expiry_time

        user = self.db.get(User, record.user_id)
        if user is None:
            return True
        if not self._owns(record.user_id):
            logger.info("user %s is served by another platform, leaving subscription alone", record.user_id)
            return True

        if status.final_status == "cancelled" and status.is_expired:
            if self.ledger.has_other_live_record(record, now):
                logger.info("user %s has another live %s purchase, skipping downgrade", record.user_id, self.platform)
                return False
            if self.machine.get_active(record.user_id) is None and user.plan_type == "free":
                return False
            return self.machine.end_service(record.user_id, reason=status.cancellation_type, event="expired")

        if status.final_status == "cancelled":
            return self.machine.mark_pending_cancellation(
                record.user_id, reason=status.cancellation_type, end_date=status.expiry_time
            ) is not None

        if status.final_status == "grace_period":
            return self.machine.mark_grace_period(
                record.user_id, reason=status.cancellation_type, end_date=status.expiry_time
            ) is not None

        plan = self.db.get(Plan, record.plan_id)
        sub, _ = self.machine.confirm_active(
            record.user_id,
            plan=plan,
            end_date=status.expiry_time,
            auto_renew=status.auto_renewing,
            payment_method=record.payment_method,
        )
        return sub is not None

    def sync_all(self) -> dict:
        results = {"processed": 0, "updated": 0, "skipped": 0, "errors": 0, "details": []}
        records = self.ledger.latest_per_user(self.platform)
        polled = 0
        for record in records:
            results["processed"] += 1
            store_id = self.store_id(record)
            if not store_id:
                results["skipped"] += 1
                continue
            if polled and self.delay:
                self.sleep(self.delay)
            polled += 1
            try:
                # One savepoint per user.
                with self.db.begin_nested():
                    status = self.fetch_status(record, store_id)
                    if status.final_status == UNKNOWN:
                        results["skipped"] += 1
                    changed = self.converge(record, status)
            except StoreAuthError:
                logger.error("%s credentials rejected, aborting reconciliation pass", self.label)
                raise
            except Exception:
                results["errors"] += 1
                logger.exception("%s reconciliation failed for payment record %s", self.label, record.id)
                continue
            if changed:
                results["updated"] += 1
            results["details"].append(
                {
                    "user_id": str(record.user_id),
                    "status": status.final_status,
                    "cancellation_type": status.cancellation_type,
                    "changed": changed,
                }
            )
        logger.info(
            "%s reconciliation: processed=%s updated=%s skipped=%s errors=%s",
            self.label,
            results["processed"],
            results["updated"],
            results["skipped"],
            results["errors"],
        )
        return results

    def force_expire(self, store_id: str) -> bool:
        record = self.ledger.find_by_store_id(store_id)
        if record is None or record.platform != self.platform:
            return False
        status = StoreStatus(
            final_status="cancelled",
            cancellation_type="forced_expiry",
            expiry_time=self.clock(),
            is_expired=True,
            auto_renewing=False,
        )
        changed = self.converge(record, status)
        self.db.flush()
        return changed


class GoogleCancellationReconciler(CancellationReconciler):
    platform = "android"
    label = "google"

    def __init__(self, db: Session, *, client: GooglePlayClient | None = None, delay: float | None = None, **kwargs):
        super().__init__(
            db,
            delay=settings.GOOGLE_RECONCILE_DELAY_SECONDS if delay is None else delay,
            **kwargs,
        )
        self.client = client or GooglePlayClient()

    def store_id(self, record: PaymentRecord) -> str | None:
        return record.receipt_data or None

    def fetch_status(self, record: PaymentRecord, store_id: str) -> StoreStatus:
        try:
            response = self.client.get_subscription_v2(store_id)
        except StoreHttpError as exc:
            message = str(exc.payload).lower()
            if exc.status == 410 or "expired for too long" in message:
                return StoreStatus(
                    final_status="cancelled",
                    cancellation_type="expired",
                    expiry_time=record.expiry_date,
                    is_expired=True,
                    auto_renewing=False,
                )
            if exc.status == 404 or "not found" in message:
                return self.not_found_status(record)
            raise

        line_items = response.get("lineItems") if isinstance(response.get("lineItems"), list) else []
        if not line_items:
            return unknown_status("no_line_items")
        line = line_items[0]
        renewing_plan = line.get("autoRenewingPlan") if isinstance(line.get("autoRenewingPlan"), dict) else {}
        cancel_ctx = response.get("canceledStateContext") if isinstance(response.get("canceledStateContext"), dict) else {}
        user_cancel = cancel_ctx.get("userInitiatedCancellation") if isinstance(cancel_ctx.get("userInitiatedCancellation"), dict) else {}
        user_cancelled_at = parse_iso_datetime(line.get("userCancellationTime")) or parse_iso_datetime(user_cancel.get("cancelTime"))
        if user_cancelled_at is None and user_cancel:
            user_cancelled_at = self.clock()

        return classify(
            now=self.clock(),
            expiry_time=parse_iso_datetime(line.get("expiryTime")),
            auto_renewing=bool(renewing_plan.get("autoRenewEnabled", False)),
            user_cancelled_at=user_cancelled_at,
            refunded=bool(line.get("refunded")),
            revoked=bool(response.get("revocationReason")),
            cancel_reason=line.get("canceledReason"),
            renewing_overrides_expiry=True,
        )


def is_valid_apple_transaction_id(value: str | None) -> bool:
    return bool(value) and len(value) >= 10 and value.isdigit()


class AppleCancellationReconciler(CancellationReconciler):
    platform = "ios"
    label = "apple"

    def __init__(self, db: Session, *, client: AppStoreServerClient | None = None, delay: float | None = None, **kwargs):
        super().__init__(
            db,
            delay=settings.APPLE_RECONCILE_DELAY_SECONDS if delay is None else delay,
            **kwargs,
        )
        self.client = client or AppStoreServerClient()

    def store_id(self, record: PaymentRecord) -> str | None:
        return record.original_transaction_id or record.transaction_id or None

    def fetch_status(self, record: PaymentRecord, store_id: str) -> StoreStatus:
        if not is_valid_apple_transaction_id(store_id):
            return unknown_status("invalid_transaction_id")
        try:
            response = self.client.get_subscription_statuses(store_id)
        except StoreHttpError as exc:
            if exc.status == 404:
                return self.not_found_status(record)
            raise

        groups = response.get("data") if isinstance(response.get("data"), list) else []
        if not groups:
            return unknown_status("empty_status")
        last_transactions = groups[0].get("lastTransactions") if isinstance(groups[0].get("lastTransactions"), list) else []
        if not last_transactions:
            return unknown_status("empty_status")
        last = last_transactions[0]
        tx = decode_jws_unverified(last.get("signedTransactionInfo")) or last
        renewal = decode_jws_unverified(last.get("signedRenewalInfo"))

        auto_renew_status = renewal.get("autoRenewStatus", last.get("autoRenewStatus", groups[0].get("autoRenewStatus")))
        auto_renewing = auto_renew_status == 1
        user_cancelled_at = None
        if not auto_renewing:
            user_cancelled_at = epoch_ms_to_datetime(renewal.get("signedDate") or tx.get("signedDate") or last.get("signedDate"))

        return classify(
            now=self.clock(),
            expiry_time=epoch_ms_to_datetime(tx.get("expiresDate")),
            auto_renewing=auto_renewing,
            user_cancelled_at=user_cancelled_at,
            refunded=tx.get("revocationReason") is not None,
            revoked=bool(tx.get("revocationDate")) or last.get("status") == 5,
        )
