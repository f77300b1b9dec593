from __future__ import annotations

from datetime import timedelta

import pytest

from imaginaryverse.core.errors import StoreAuthError, StoreHttpError
from imaginaryverse.services.reconciler import GoogleCancellationReconciler, classify
from tests.testkit import BASE_TIME, apple_status, google_subscription, make_payment, make_user

APPLE_OTID = "2000000000000001"


def _subscribe(h, plans, user, platform, **payment_fields):
    method = {"android": "google_play", "ios": "apple"}[platform]
    sub = h.machine.subscribe(user.id, plans["standard"].id, method).subscription
    record = make_payment(h.db, user=user, plan=plans["standard"], platform=platform, created_at=h.clock(), **payment_fields)
    return sub, record


def test_classify_rules():
    now = BASE_TIME
    later = now + timedelta(days=3)
    earlier = now - timedelta(days=3)

    assert classify(now=now, expiry_time=later, auto_renewing=True).final_status == "active"
    assert classify(now=now, expiry_time=earlier, auto_renewing=True).cancellation_type == "expired"
    renewing_google = classify(now=now, expiry_time=earlier, auto_renewing=True, renewing_overrides_expiry=True)
    assert (renewing_google.final_status, renewing_google.is_expired) == ("active", False)

    grace = classify(now=now, expiry_time=later, auto_renewing=False, user_cancelled_at=earlier)
    assert (grace.final_status, grace.cancellation_type) == ("grace_period", "user_cancelled")

    refunded = classify(now=now, expiry_time=later, auto_renewing=True, refunded=True)
    assert (refunded.final_status, refunded.is_expired) == ("cancelled", False)
    assert classify(now=now, expiry_time=later, auto_renewing=True, revoked=True).cancellation_type == "revoked"
    refunded_after_cancel = classify(now=now, expiry_time=later, auto_renewing=False, user_cancelled_at=earlier, refunded=True)
    assert refunded_after_cancel.cancellation_type == "refunded"
    assert classify(now=now, expiry_time=later, auto_renewing=True, cancel_reason="replaced").cancellation_type == "replaced"
    assert classify(now=now, expiry_time=None, auto_renewing=False).is_expired is True


def test_apple_grace_period_keeps_credits(db, h, plans, user, clock):
    sub, record = _subscribe(h, plans, user, "ios", original_transaction_id=APPLE_OTID, transaction_id="2000000000000042")
    h.credits.record_generation_usage(user.id, "image", 5)
    h.apple.queue(
        APPLE_OTID,
        apple_status(expiry=clock() + timedelta(days=5), auto_renewing=False, signed_at=clock() - timedelta(days=1)),
    )

    result = h.apple_reconciler.sync_all()

    assert result["updated"] == 1
    assert sub.status == "grace_period"
    assert sub.auto_renew is False
    assert sub.end_date == clock() + timedelta(days=5)
    assert user.subscription_status == "grace_period"
    assert user.total_credits == 100
    assert user.used_image_credits == 5
    assert record.status == "grace_period"
    assert record.cancellation_type == "user_cancelled"
    assert record.last_checked == clock()


def test_google_expired_purchase_downgrades(db, h, plans, user, clock):
    _, record = _subscribe(h, plans, user, "android", receipt_data="tok-1")
    h.google.queue("tok-1", google_subscription(expiry=clock() - timedelta(days=1), auto_renewing=False))

    result = h.google_reconciler.sync_all()

    assert result["updated"] == 1
    assert user.plan_type == "free"
    assert user.total_credits == 4
    assert h.machine.get_active(user.id) is None
    assert record.status == "cancelled"
    assert record.cancelled_at == clock()
    assert h.sender.events(user.id)[-1] == "expired"


def test_other_live_purchase_blocks_downgrade(db, h, plans, user, clock):
    make_payment(
        db,
        user=user,
        plan=plans["standard"],
        platform="android",
        created_at=clock() - timedelta(days=10),
        receipt_data="tok-old",
        transaction_id="GPA.old",
        expiry_date=clock() + timedelta(days=20),
    )
    _subscribe(h, plans, user, "android", receipt_data="tok-new", transaction_id="GPA.new")
    h.google.queue("tok-new", google_subscription(expiry=clock() - timedelta(hours=1), auto_renewing=False))

    result = h.google_reconciler.sync_all()

    assert h.google.calls == ["tok-new"]
    assert result["updated"] == 0
    assert user.plan_type == "standard"


def test_pending_cancellation_when_store_cancelled_but_not_expired(db, h, plans, user, clock):
    sub, _ = _subscribe(h, plans, user, "ios", original_transaction_id=APPLE_OTID)
    h.apple.queue(APPLE_OTID, apple_status(expiry=clock() + timedelta(days=9), revocation_reason=0))

    h.apple_reconciler.sync_all()

    assert sub.status == "active"
    assert sub.auto_renew is False
    assert sub.cancelled_at == clock()
    assert sub.end_date == clock() + timedelta(days=9)
    assert user.plan_type == "standard"


def test_apple_refund_with_auto_renew_off_is_recorded_as_refund(db, h, plans, user, clock):
    sub, record = _subscribe(h, plans, user, "ios", original_transaction_id=APPLE_OTID)
    h.apple.queue(
        APPLE_OTID,
        apple_status(
            expiry=clock() + timedelta(days=9),
            auto_renewing=False,
            signed_at=clock() - timedelta(hours=2),
            revocation_reason=1,
        ),
    )

    h.apple_reconciler.sync_all()

    assert record.status == "cancelled"
    assert record.cancellation_type == "refunded"
    assert sub.status == "active"
    assert sub.auto_renew is False


def test_not_found_waits_for_age_threshold(db, h, plans, user, clock):
    _, record = _subscribe(h, plans, user, "ios", original_transaction_id=APPLE_OTID)
    record.created_at = clock() - timedelta(days=40)
    record.expiry_date = clock() - timedelta(days=10)
    db.flush()

    first = h.apple_reconciler.sync_all()
    assert first["skipped"] == 1
    assert first["updated"] == 0
    assert user.plan_type == "standard"
    assert record.last_checked == clock()

    clock.advance(days=21)
    second = h.apple_reconciler.sync_all()
    assert second["updated"] == 1
    assert user.plan_type == "free"
    assert record.cancellation_type == "subscription_not_found"


def test_not_found_without_expiry_uses_record_age(db, h, plans, user, clock):
    _, record = _subscribe(h, plans, user, "android", receipt_data="tok-gone")
    record.created_at = clock() - timedelta(days=59)
    db.flush()

    h.google_reconciler.sync_all()
    assert user.plan_type == "standard"

    clock.advance(days=2)
    h.google_reconciler.sync_all()
    assert user.plan_type == "free"


def test_google_gone_purchase_counts_as_expired(db, h, plans, user):
    _subscribe(h, plans, user, "android", receipt_data="tok-410")
    h.google.queue(
        "tok-410",
        StoreHttpError(410, {"error": {"message": "The subscription purchase has expired for too long."}}),
    )
    h.google_reconciler.sync_all()
    assert user.plan_type == "free"


def test_repeated_conflicting_polls_converge(db, h, plans, user, clock):
    sub, _ = _subscribe(h, plans, user, "android", receipt_data="tok-c")
    expiry = clock() + timedelta(days=30)
    h.google.queue(
        "tok-c",
        google_subscription(expiry=expiry),
        google_subscription(expiry=expiry, auto_renewing=False, user_cancelled_at=clock()),
        google_subscription(expiry=expiry),
        google_subscription(expiry=expiry, auto_renewing=False, user_cancelled_at=clock()),
    )

    h.google_reconciler.sync_all()
    assert (sub.status, sub.end_date) == ("active", expiry)

    clock.advance(days=1)
    h.google_reconciler.sync_all()
    assert sub.status == "grace_period"

    clock.advance(days=1)
    h.google_reconciler.sync_all()
    assert (sub.status, sub.auto_renew, sub.cancelled_at) == ("active", True, None)
    assert user.total_credits == 100

    clock.now = expiry + timedelta(days=1)
    h.google_reconciler.sync_all()
    assert user.plan_type == "free"
    notifications = len(h.sender.sent)

    clock.advance(days=1)
    again = h.google_reconciler.sync_all()
    assert again["updated"] == 0
    assert user.plan_type == "free"
    assert len(h.sender.sent) == notifications


def test_active_refresh_regrants_only_on_real_renewal(db, h, plans, user, clock):
    sub, _ = _subscribe(h, plans, user, "android", receipt_data="tok-r")
    first_expiry = clock() + timedelta(days=30)
    renewed_expiry = first_expiry + timedelta(days=30)
    h.google.queue("tok-r", google_subscription(expiry=first_expiry), google_subscription(expiry=first_expiry), google_subscription(expiry=renewed_expiry))
    h.credits.record_generation_usage(user.id, "prompt", 20)

    h.google_reconciler.sync_all()
    assert user.used_prompt_credits == 20

    clock.advance(days=2)
    h.google_reconciler.sync_all()
    assert user.used_prompt_credits == 20

    clock.now = first_expiry + timedelta(hours=1)
    h.google_reconciler.sync_all()
    assert user.used_prompt_credits == 0
    assert sub.end_date == renewed_expiry


def test_missing_local_subscription_is_recreated(db, h, plans, user, clock):
    record = make_payment(db, user=user, plan=plans["standard"], platform="android", created_at=clock(), receipt_data="tok-m")
    h.google.queue("tok-m", google_subscription(expiry=clock() + timedelta(days=30)))

    h.google_reconciler.sync_all()

    sub = h.machine.get_active(user.id)
    assert sub is not None
    assert sub.plan_id == plans["standard"].id
    assert sub.payment_method == record.payment_method
    assert user.plan_type == "standard"
    assert user.total_credits == 100


def test_failed_converge_is_rolled_back_for_that_user_only(db, h, plans, clock, monkeypatch):
    broken = make_user(db, username="halfway")
    healthy = make_user(db, username="steady")
    _, broken_record = _subscribe(h, plans, broken, "android", receipt_data="tok-half", transaction_id="GPA.half")
    _subscribe(h, plans, healthy, "android", receipt_data="tok-steady", transaction_id="GPA.steady")
    db.commit()
    expired = google_subscription(expiry=clock() - timedelta(days=1), auto_renewing=False)
    h.google.queue("tok-half", expired)
    h.google.queue("tok-steady", expired)

    end_service = h.machine.end_service

    def flaky_end_service(user_id, **kwargs):
        if user_id == broken.id:
            raise RuntimeError("lost connection")
        return end_service(user_id, **kwargs)

    monkeypatch.setattr(h.machine, "end_service", flaky_end_service)
    result = h.google_reconciler.sync_all()
    db.commit()

    assert result["errors"] == 1
    assert result["updated"] == 1
    db.expire_all()
    assert broken_record.status == "completed"
    assert broken_record.cancellation_type is None
    assert broken.plan_type == "standard"
    assert healthy.plan_type == "free"


def test_recreated_subscription_grants_plan_credits_after_daily_reset(db, h, plans, user, clock):
    h.credits.reset_daily_free_credits()
    assert user.last_credit_reset is not None
    make_payment(db, user=user, plan=plans["standard"], platform="android", created_at=clock(), receipt_data="tok-r")
    h.google.queue("tok-r", google_subscription(expiry=clock() + timedelta(days=30)))

    h.google_reconciler.sync_all()

    assert user.plan_type == "standard"
    assert user.is_subscribed is True
    assert (user.total_credits, user.image_generation_credits, user.prompt_generation_credits) == (100, 50, 50)


def test_one_bad_user_does_not_stop_the_batch(db, h, plans, clock):
    broken = make_user(db, username="broken")
    healthy = make_user(db, username="healthy")
    _subscribe(h, plans, broken, "android", receipt_data="tok-bad", transaction_id="GPA.bad")
    _subscribe(h, plans, healthy, "android", receipt_data="tok-ok", transaction_id="GPA.ok")
    h.google.queue("tok-bad", StoreHttpError(500, "backend error"))
    h.google.queue("tok-ok", google_subscription(expiry=clock() - timedelta(days=1), auto_renewing=False))

    result = h.google_reconciler.sync_all()

    assert result["processed"] == 2
    assert result["errors"] == 1
    assert result["updated"] == 1
    assert healthy.plan_type == "free"
    assert broken.plan_type == "standard"


def test_apple_auth_failure_aborts_pass(db, h, plans, user):
    _subscribe(h, plans, user, "ios", original_transaction_id=APPLE_OTID)
    h.apple.queue(APPLE_OTID, StoreAuthError("rejected"))
    with pytest.raises(StoreAuthError):
        h.apple_reconciler.sync_all()

    assert h.service.check_cancellations()["apple"] == {"error": "rejected"}


def test_records_without_usable_ids_are_skipped(db, h, plans, user, clock):
    other = make_user(db, username="nokey")
    _subscribe(h, plans, user, "ios", original_transaction_id="abc", transaction_id="abc")
    make_payment(db, user=other, plan=plans["standard"], platform="android", created_at=clock(), receipt_data=None)

    apple = h.apple_reconciler.sync_all()
    google = h.google_reconciler.sync_all()

    assert apple["skipped"] == 1
    assert google["skipped"] == 1
    assert h.apple.calls == []
    assert h.google.calls == []
    assert user.plan_type == "standard"


def test_delay_between_store_calls(db, h, plans, clock):
    sleeps: list[float] = []
    reconciler = GoogleCancellationReconciler(db, client=h.google, machine=h.machine, clock=clock, sleep=sleeps.append)
    for name in ("a", "b", "c"):
        member = make_user(db, username=name)
        _subscribe(h, plans, member, "android", receipt_data=f"tok-{name}", transaction_id=f"GPA.{name}")
        h.google.queue(f"tok-{name}", google_subscription(expiry=clock() + timedelta(days=30)))

    reconciler.sync_all()
    assert sleeps == [0.05, 0.05]


def test_force_expire(db, h, plans, user):
    _subscribe(h, plans, user, "android", receipt_data="tok-f")
    assert h.service.force_expire("google", "tok-f") is True
    assert user.plan_type == "free"
    assert h.service.force_expire("google", "unknown-token") is False
