from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from jose import jwt

from imaginaryverse.core.errors import StoreHttpError
from imaginaryverse.models.payment_record import PaymentRecord
from imaginaryverse.models.plan import Plan
from imaginaryverse.models.user import User
from imaginaryverse.services.credits import CreditLedger
from imaginaryverse.services.notifications import SubscriptionNotifier
from imaginaryverse.services.orchestrator import SubscriptionService
from imaginaryverse.services.payment_ledger import PaymentLedger
from imaginaryverse.services.payment_reversal import PaymentReversalService
from imaginaryverse.services.plan_catalog import APPLE, GOOGLE, PlanCatalog, StoreProduct
from imaginaryverse.services.purchase_verifier import PurchaseVerifier
from imaginaryverse.services.reconciler import AppleCancellationReconciler, GoogleCancellationReconciler
from imaginaryverse.services.subscriptions import SubscriptionStateMachine

BASE_TIME = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class ApiError(RuntimeError):
    def __init__(self, status_code: int, payload):
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"HTTP {status_code}: {payload}")


class ApiClient:
    """Same calling convention as a remote client, served in-process."""

    def __init__(self, client):
        self.client = client

    def call(self, method: str, path: str, *, token: str | None = None, body=None):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        resp = self.client.request(method.upper(), path, headers=headers, json=body)
        payload = resp.json() if resp.content else None
        if resp.status_code >= 400:
            raise ApiError(resp.status_code, payload)
        return payload


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = fail

    def send_custom_notification(self, recipient_id: str, actor_id: str, payload: dict) -> None:
        if self.fail:
            raise RuntimeError("push backend down")
        self.sent.append((recipient_id, actor_id, payload))

    def events(self, user_id=None) -> list[str]:
        return [
            payload["data"]["event"]
            for recipient, _, payload in self.sent
            if user_id is None or recipient == str(user_id)
        ]


class FakeStripe:
    def __init__(self, status: str = "succeeded"):
        self.status = status
        self.refunds: list[str] = []
        self.intents: list[dict] = []

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        return {"id": payment_intent_id, "status": self.status, "amount": 999}

    def create_payment_intent(self, *, amount_cents: int, currency: str, metadata: dict) -> dict:
        self.intents.append({"amount": amount_cents, "currency": currency, "metadata": metadata})
        return {"id": f"pi_{len(self.intents)}", "client_secret": "secret_x", "status": "requires_payment_method"}

    def refund(self, payment_intent_id: str) -> dict:
        self.refunds.append(payment_intent_id)
        return {"id": f"re_{payment_intent_id}", "status": "succeeded"}


class FakeGooglePlay:
    """Serves queued responses per purchase token; the last one repeats."""

    def __init__(self):
        self.responses: dict[str, list] = {}
        self.acknowledged: list[tuple[str, str]] = []
        self.revoked: list[str] = []
        self.calls: list[str] = []

    def queue(self, token: str, *responses) -> None:
        self.responses.setdefault(token, []).extend(responses)

    def get_subscription_v2(self, purchase_token: str) -> dict:
        self.calls.append(purchase_token)
        queued = self.responses.get(purchase_token)
        if not queued:
            raise StoreHttpError(404, {"error": {"message": "Purchase token not found"}})
        response = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(response, Exception):
            raise response
        return response

    def acknowledge(self, product_id: str, purchase_token: str) -> None:
        self.acknowledged.append((product_id, purchase_token))

    def revoke(self, purchase_token: str) -> dict:
        self.revoked.append(purchase_token)
        return {}


class FakeAppStoreServer:
    def __init__(self):
        self.responses: dict[str, list] = {}
        self.calls: list[str] = []

    def queue(self, original_transaction_id: str, *responses) -> None:
        self.responses.setdefault(original_transaction_id, []).extend(responses)

    def get_subscription_statuses(self, original_transaction_id: str) -> dict:
        self.calls.append(original_transaction_id)
        queued = self.responses.get(original_transaction_id)
        if not queued:
            raise StoreHttpError(404, {"errorCode": 4040005})
        response = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeAppleReceipts:
    def __init__(self, response: dict | None = None):
        self.response = response or {"status": 21002}

    def verify_receipt(self, receipt_data: str) -> dict:
        return self.response


@dataclass
class FakeCatalogSource:
    products: dict[str, list[StoreProduct]] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)

    def list_products(self, platform: str) -> list[StoreProduct]:
        if platform in self.errors:
            raise self.errors[platform]
        return list(self.products.get(platform, []))


def iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def make_jws(claims: dict) -> str:
    # Signature is never checked, any key will do.
    return jwt.encode(claims, "test-key", algorithm="HS256")


def google_subscription(
    *,
    expiry: datetime,
    auto_renewing: bool = True,
    state: str = "SUBSCRIPTION_STATE_ACTIVE",
    product_id: str = "com.imaginaryverse.standard_monthly",
    user_cancelled_at: datetime | None = None,
    payment_state: int | None = 1,
    test_purchase: bool = False,
    acknowledgement: str = "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED",
) -> dict:
    line = {
        "productId": product_id,
        "expiryTime": iso(expiry),
        "autoRenewingPlan": {"autoRenewEnabled": auto_renewing},
    }
    response = {
        "subscriptionState": state,
        "latestOrderId": "GPA.1234-5678",
        "acknowledgementState": acknowledgement,
        "lineItems": [line],
    }
    if payment_state is not None:
        response["paymentState"] = payment_state
    if test_purchase:
        response["testPurchase"] = {}
    if user_cancelled_at is not None:
        response["canceledStateContext"] = {"userInitiatedCancellation": {"cancelTime": iso(user_cancelled_at)}}
    return response


def apple_status(
    *,
    expiry: datetime,
    auto_renewing: bool = True,
    signed_at: datetime | None = None,
    revocation_reason: int | None = None,
    product_id: str = "com.imaginaryverse.standard_monthly",
) -> dict:
    tx = {"productId": product_id, "expiresDate": epoch_ms(expiry)}
    if revocation_reason is not None:
        tx["revocationReason"] = revocation_reason
        tx["revocationDate"] = epoch_ms(expiry)
    renewal = {"autoRenewStatus": 1 if auto_renewing else 0}
    if signed_at is not None:
        renewal["signedDate"] = epoch_ms(signed_at)
    return {
        "data": [
            {
                "subscriptionGroupIdentifier": "21000000",
                "lastTransactions": [
                    {
                        "status": 1,
                        "originalTransactionId": "2000000000000001",
                        "signedTransactionInfo": make_jws(tx),
                        "signedRenewalInfo": make_jws(renewal),
                    }
                ],
            }
        ]
    }


def make_user(db, **fields) -> User:
    user = User(username=fields.pop("username", "artist"), **fields)
    db.add(user)
    db.flush()
    return user


def make_plan(db, *, name: str, type: str, total: int, image: int, prompt: int, price: float = 9.99, **fields) -> Plan:
    plan = Plan(
        name=name,
        type=type,
        price=price,
        total_credits=total,
        image_generation_credits=image,
        prompt_generation_credits=prompt,
        **fields,
    )
    db.add(plan)
    db.flush()
    return plan


def make_payment(db, *, user: User, plan: Plan, platform: str, created_at: datetime, **fields) -> PaymentRecord:
    method = {"android": "google_play", "ios": "apple", "stripe": "stripe"}[platform]
    record = PaymentRecord(
        user_id=user.id,
        plan_id=plan.id,
        payment_method=fields.pop("payment_method", method),
        transaction_id=fields.pop("transaction_id", f"tx-{user.id.hex[:8]}"),
        platform=platform,
        status=fields.pop("status", "completed"),
        amount=float(plan.price or 0),
        plan_snapshot=plan.snapshot(),
        created_at=created_at,
        **fields,
    )
    db.add(record)
    db.flush()
    return record


@dataclass
class Harness:
    db: object
    clock: FakeClock
    sender: RecordingSender
    stripe: FakeStripe
    google: FakeGooglePlay
    apple: FakeAppStoreServer
    apple_receipts: FakeAppleReceipts
    catalog_source: FakeCatalogSource
    catalog: PlanCatalog
    credits: CreditLedger
    notifier: SubscriptionNotifier
    machine: SubscriptionStateMachine
    ledger: PaymentLedger
    service: SubscriptionService
    google_reconciler: GoogleCancellationReconciler
    apple_reconciler: AppleCancellationReconciler


def build_harness(db, clock: FakeClock | None = None) -> Harness:
    clock = clock or FakeClock()
    sender = RecordingSender()
    stripe = FakeStripe()
    google = FakeGooglePlay()
    apple = FakeAppStoreServer()
    apple_receipts = FakeAppleReceipts()
    source = FakeCatalogSource()
    catalog = PlanCatalog(db, source=source, clock=clock)
    credits = CreditLedger(db, clock=clock)
    notifier = SubscriptionNotifier(sender)
    machine = SubscriptionStateMachine(db, catalog=catalog, credits=credits, notifier=notifier, clock=clock)
    ledger = PaymentLedger(db)
    google_reconciler = GoogleCancellationReconciler(
        db, client=google, machine=machine, ledger=ledger, clock=clock, sleep=lambda s: None
    )
    apple_reconciler = AppleCancellationReconciler(
        db, client=apple, machine=machine, ledger=ledger, clock=clock, sleep=lambda s: None
    )
    service = SubscriptionService(
        db,
        catalog=catalog,
        ledger=ledger,
        verifier=PurchaseVerifier(
            stripe_gateway=stripe,
            google_client=google,
            apple_receipts=apple_receipts,
            clock=clock,
        ),
        credits=credits,
        notifier=notifier,
        machine=machine,
        reversal=PaymentReversalService(stripe_gateway=stripe, google_client=google),
        stripe_gateway=stripe,
        reconcilers={GOOGLE: google_reconciler, APPLE: apple_reconciler},
        clock=clock,
    )
    return Harness(
        db=db,
        clock=clock,
        sender=sender,
        stripe=stripe,
        google=google,
        apple=apple,
        apple_receipts=apple_receipts,
        catalog_source=source,
        catalog=catalog,
        credits=credits,
        notifier=notifier,
        machine=machine,
        ledger=ledger,
        service=service,
        google_reconciler=google_reconciler,
        apple_reconciler=apple_reconciler,
    )
