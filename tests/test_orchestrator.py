from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
import sqlalchemy as sa

from imaginaryverse.core.config import settings
from imaginaryverse.core.errors import (
    PlanNotFoundError,
    PurchaseVerificationError,
    StoreHttpError,
    SubscriptionPersistenceError,
    UserNotFoundError,
)
from imaginaryverse.models.payment_record import PaymentRecord
from imaginaryverse.models.subscription import UserSubscription
from imaginaryverse.services.plan_catalog import StoreProduct
from tests.testkit import google_subscription, make_payment, make_user


def _count(db, model) -> int:
    return db.execute(sa.select(sa.func.count()).select_from(model)).scalar_one()


def test_subscribe_is_idempotent_per_transaction(db, h, plans, user):
    first = h.service.subscribe(user.id, plans["standard"].id, "stripe", {"paymentIntentId": "pi_1"})
    assert (first.success, first.action, first.message) == (True, "created", "Subscription created")
    h.credits.record_generation_usage(user.id, "image", 3)

    replay = h.service.subscribe(user.id, plans["standard"].id, "stripe", {"paymentIntentId": "pi_1"})

    assert replay.action == "existing"
    assert replay.message == "Already subscribed"
    assert replay.subscription.id == first.subscription.id
    assert user.used_image_credits == 3
    assert _count(db, PaymentRecord) == 1
    assert h.sender.events(user.id) == ["new"]


def test_trial_replay_returns_existing_subscription(db, h, plans, user):
    first = h.service.subscribe(user.id, plans["trial"].id, "stripe", {"paymentIntentId": "pi_trial"}, is_trial=True)
    assert first.action == "trial_started"

    replay = h.service.subscribe(user.id, plans["trial"].id, "stripe", {"paymentIntentId": "pi_trial"}, is_trial=True)

    assert (replay.action, replay.message) == ("existing", "Already subscribed")
    assert replay.subscription.id == first.subscription.id

    h.service.subscribe(user.id, plans["standard"].id, "stripe", {"paymentIntentId": "pi_std"})
    plans["standard"].is_active = False
    assert h.service.subscribe(user.id, plans["standard"].id, "stripe", {"paymentIntentId": "pi_std"}).action == "existing"


def test_concurrent_replay_hits_unique_transaction(db, h, plans, user, clock, monkeypatch):
    make_payment(db, user=user, plan=plans["basic"], platform="stripe", created_at=clock(), transaction_id="pi_race")
    db.commit()
    real_find = h.ledger.find_by_transaction
    misses = [None]

    def racing_find(transaction_id, plan_id):
        if misses:
            return misses.pop()
        return real_find(transaction_id, plan_id)

    monkeypatch.setattr(h.ledger, "find_by_transaction", racing_find)
    result = h.service.subscribe(user.id, plans["basic"].id, "stripe", {"paymentIntentId": "pi_race"})

    assert (result.action, result.message) == ("existing", "Already subscribed")
    assert h.stripe.refunds == []
    assert _count(db, PaymentRecord) == 1
    assert _count(db, UserSubscription) == 0
    assert user.plan_type == "free"


def test_upgrade_through_service(db, h, plans, user):
    h.service.subscribe(user.id, plans["basic"].id, "stripe", {"paymentIntentId": "pi_1"})
    result = h.service.subscribe(user.id, plans["premium"].id, "stripe", {"paymentIntentId": "pi_2"})
    assert (result.action, result.message) == ("upgraded", "Subscription upgraded")
    assert user.plan_type == "premium"
    assert _count(db, PaymentRecord) == 2


def test_failed_verification_changes_nothing(db, h, plans, user):
    h.stripe.status = "requires_action"
    with pytest.raises(PurchaseVerificationError) as err:
        h.service.subscribe(user.id, plans["standard"].id, "stripe", {"paymentIntentId": "pi_2"})

    assert err.value.reason == "payment_intent_requires_action"
    assert _count(db, UserSubscription) == 0
    assert _count(db, PaymentRecord) == 0
    assert user.plan_type == "free"


def test_eligibility_is_checked_before_the_store(db, h, plans, user):
    plans["standard"].is_active = False
    with pytest.raises(PlanNotFoundError):
        h.service.subscribe(user.id, plans["standard"].id, "google_play", {"purchaseToken": "tok-1"})
    assert h.google.calls == []

    with pytest.raises(UserNotFoundError):
        h.service.subscribe(uuid.uuid4(), plans["basic"].id, "stripe", {"paymentIntentId": "pi_3"})


def test_google_purchase_uses_store_expiry(db, h, plans, user, clock):
    expiry = clock() + timedelta(days=30)
    h.google.queue("tok-g", google_subscription(expiry=expiry))

    result = h.service.subscribe(
        user.id,
        plans["standard"].id,
        "google_play",
        {"purchaseToken": "tok-g", "productId": "com.imaginaryverse.standard_monthly"},
    )

    assert result.subscription.end_date == expiry
    record = db.execute(sa.select(PaymentRecord)).scalar_one()
    assert record.transaction_id == "GPA.1234-5678"
    assert record.platform == "android"
    assert record.receipt_data == "tok-g"
    assert record.expiry_date == expiry


def test_persistence_failure_reverses_payment(db, h, plans, user, monkeypatch):
    db.commit()

    def broken_record(**kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(h.ledger, "record", broken_record)

    with pytest.raises(SubscriptionPersistenceError) as err:
        h.service.subscribe(user.id, plans["standard"].id, "stripe", {"paymentIntentId": "pi_9"})

    assert err.value.refund_status == {"status": "refunded", "method": "stripe", "detail": "re_pi_9"}
    assert h.stripe.refunds == ["pi_9"]
    assert h.machine.get_active(user.id) is None
    assert user.plan_type == "free"
    assert _count(db, PaymentRecord) == 0


def test_exhausted_credits_notify_the_user(db, h, plans, user):
    h.service.subscribe(user.id, plans["basic"].id, "stripe", {"paymentIntentId": "pi_1"})
    h.service.record_generation_usage(user.id, "image", 25)

    result = h.service.check_generation_limits(user.id, "image")

    assert result == {"allowed": False, "reason": "credits_exhausted", "remaining": 0}
    payload = h.sender.sent[-1][2]
    assert payload["data"] == {"event": "credits_exhausted", "generationType": "image"}
    assert payload["body"] == "You have used all your Basic credits."
    assert h.service.check_generation_limits(user.id, "prompt")["allowed"] is True


def test_payment_intent_for_paid_plan(db, h, plans, user):
    out = h.service.create_payment_intent(user.id, plans["standard"].id)
    assert out["client_secret"] == "secret_x"
    assert h.stripe.intents == [
        {
            "amount": 999,
            "currency": settings.STRIPE_CURRENCY,
            "metadata": {"user_id": str(user.id), "plan_id": str(plans["standard"].id)},
        }
    ]
    with pytest.raises(PlanNotFoundError):
        h.service.create_payment_intent(user.id, plans["free"].id)


def test_plan_sync_reports_per_platform(db, h):
    h.catalog_source.products["google"] = [StoreProduct("com.iv.basic_weekly", price=2.99, billing_period="weekly")]
    h.catalog_source.errors["apple"] = StoreHttpError(503, "unavailable")

    result = h.service.sync_plans()

    assert result["google"]["inserted"] == 1
    assert "error" in result["apple"]


def test_cleanup_orphans(db, h, plans, user, clock):
    db.add(
        UserSubscription(
            user_id=uuid.uuid4(),
            plan_id=plans["basic"].id,
            start_date=clock(),
            end_date=clock() + timedelta(days=7),
            status="active",
            plan_snapshot=plans["basic"].snapshot(),
        )
    )
    sub = h.machine.subscribe(user.id, plans["basic"].id, "stripe").subscription
    sub.end_date = None
    ghost = make_payment(db, user=user, plan=plans["basic"], platform="stripe", created_at=clock(), transaction_id="pi_ghost")
    ghost.user_id = uuid.uuid4()
    make_payment(db, user=user, plan=plans["basic"], platform="stripe", created_at=clock(), transaction_id="pi_1")
    db.flush()

    result = h.service.cleanup_orphans()

    assert result["subscriptions"] == {"orphans_deleted": 1, "duplicates_cancelled": 0}
    assert result["payment_records"] == {"orphans_deleted": 1}
    assert result["null_end_dates_fixed"] == 1
    assert sub.end_date == sub.start_date + timedelta(days=7)
    assert _count(db, PaymentRecord) == 1


def test_local_status_sync_repairs_drift(db, h, plans, user):
    drifted = make_user(db, username="drifted", plan_type="standard", plan_name="Standard", is_subscribed=True)
    h.machine.subscribe(user.id, plans["basic"].id, "stripe")
    user.subscription_status = "cancelled"
    user.is_subscribed = False
    db.flush()

    result = h.service.sync_local_status()

    assert result == {"checked": 2, "fixed": 2}
    assert user.subscription_status == "active"
    assert user.is_subscribed is True
    assert drifted.plan_type == "free"
    assert drifted.cancellation_reason == "no_active_subscription"


def test_free_credit_reset_through_service(db, h, user, clock):
    assert h.service.reset_free_credits() == 1
    assert h.service.reset_free_credits() == 0
    user.used_prompt_credits = 1

    clock.advance(days=1)
    assert h.service.reset_free_credits() == 1
    assert user.used_prompt_credits == 0
    assert user.total_credits == settings.FREE_TOTAL_CREDITS


def test_force_expire_rejects_unknown_platform(db, h):
    with pytest.raises(ValueError):
        h.service.force_expire("blackberry", "tok")
