from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from imaginaryverse.api.deps import get_current_user, get_subscription_service
from imaginaryverse.core.config import settings
from imaginaryverse.core.errors import BillingError, SubscriptionPersistenceError
from imaginaryverse.db.session import get_db
from imaginaryverse.schemas.subscriptions import (
    CancelIn,
    CancelOut,
    CreditsOut,
    CurrentSubscriptionOut,
    GenerationCheckOut,
    GenerationType,
    PaymentIntentIn,
    PaymentIntentOut,
    PlanOut,
    SubscribeIn,
    SubscribeOut,
    SubscriptionOut,
    TrialIn,
)
from imaginaryverse.services.orchestrator import SubscriptionService

router = APIRouter()


def _http_error(exc: BillingError) -> HTTPException:
    if isinstance(exc, SubscriptionPersistenceError):
        return HTTPException(exc.status_code, {"message": exc.message, "refund_status": exc.refund_status})
    return HTTPException(exc.status_code, exc.message)


def _subscription_out(sub) -> SubscriptionOut | None:
    return SubscriptionOut.model_validate(sub) if sub is not None else None


@router.get("/plans", response_model=list[PlanOut])
def list_plans(service: SubscriptionService = Depends(get_subscription_service), db: Session = Depends(get_db)):
    plans = service.list_plans()
    db.commit()
    return [PlanOut.model_validate(p) for p in plans]


@router.get("/current", response_model=CurrentSubscriptionOut)
def current_subscription(
    current=Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    sub = service.get_active_subscription(current.id)
    return CurrentSubscriptionOut(
        subscription=_subscription_out(sub),
        credits=CreditsOut.model_validate(current),
    )


@router.post("/subscribe", response_model=SubscribeOut)
def subscribe(
    payload: SubscribeIn,
    current=Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
    db: Session = Depends(get_db),
):
    try:
        result = service.subscribe(
            current.id,
            payload.plan_id,
            payload.payment_method,
            payload.verification_data,
            is_trial=payload.is_trial,
        )
    except BillingError as exc:
        db.rollback()
        raise _http_error(exc)
    except NotImplementedError as exc:
        db.rollback()
        raise HTTPException(503, str(exc))
    db.commit()
    return SubscribeOut(message=result.message, action=result.action, subscription=_subscription_out(result.subscription))


@router.post("/trial", response_model=SubscribeOut)
def start_trial(
    payload: TrialIn,
    current=Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
    db: Session = Depends(get_db),
):
    try:
        result = service.start_trial(current.id, payload.payment_method)
    except BillingError as exc:
        db.rollback()
        raise _http_error(exc)
    db.commit()
    return SubscribeOut(message=result.message, action=result.action, subscription=_subscription_out(result.subscription))


@router.post("/cancel", response_model=CancelOut)
def cancel_subscription(
    payload: CancelIn,
    current=Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
    db: Session = Depends(get_db),
):
    try:
        outcome = service.cancel(current.id, immediate=payload.immediate, reason=payload.reason)
    except BillingError as exc:
        db.rollback()
        raise _http_error(exc)
    db.commit()
    return CancelOut(changed=outcome.changed, message=outcome.message, subscription=_subscription_out(outcome.subscription))


@router.get("/check-generation/{generation_type}", response_model=GenerationCheckOut)
def check_generation(
    generation_type: GenerationType,
    current=Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return GenerationCheckOut(**service.check_generation_limits(current.id, generation_type))


@router.post("/payment-intent", response_model=PaymentIntentOut)
def create_payment_intent(
    payload: PaymentIntentIn,
    current=Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        out = service.create_payment_intent(current.id, payload.plan_id)
    except BillingError as exc:
        raise _http_error(exc)
    except NotImplementedError as exc:
        raise HTTPException(503, str(exc))
    return PaymentIntentOut(**out)


@router.post("/reconcile")
def run_reconciliation(
    current=Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
    db: Session = Depends(get_db),
):
    if settings.ENV != "dev":
        raise HTTPException(404, "Not available")
    result = {
        "cancellations": service.check_cancellations(),
        "expired": service.process_expired_subscriptions(),
        "grace_period": service.process_grace_period_subscriptions(),
        "status_sync": service.sync_local_status(),
    }
    db.commit()
    return {"ok": True, **result}
