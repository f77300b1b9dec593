from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from imaginaryverse.core.security import decode_jws_unverified, now_utc
from imaginaryverse.services.store_clients import (
    AppleReceiptClient,
    GooglePlayClient,
    StripeGateway,
    epoch_ms_to_datetime,
    parse_iso_datetime,
)

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("stripe", "google_play", "google_pay", "apple")


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    transaction_id: str | None = None
    original_transaction_id: str | None = None
    product_id: str | None = None
    expires_date: datetime | None = None
    reason: str | None = None


def transaction_id_for(method: str, verification_data: dict) -> str | None:
    if method == "stripe":
        return verification_data.get("paymentIntentId")
    if method in ("google_play", "google_pay"):
        return verification_data.get("transactionId")
    if method == "apple":
        return verification_data.get("transactionId") or verification_data.get("originalTransactionId")
    return None


def _failure(reason: str) -> VerificationResult:
    return VerificationResult(success=False, reason=reason)


class PurchaseVerifier:
    def __init__(
        self,
        *,
        stripe_gateway: StripeGateway | None = None,
        google_client: GooglePlayClient | None = None,
        apple_receipts: AppleReceiptClient | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.stripe_gateway = stripe_gateway or StripeGateway()
        self.google_client = google_client or GooglePlayClient()
        self.apple_receipts = apple_receipts or AppleReceiptClient()
        self.clock = clock

    def verify(self, method: str, verification_data: dict) -> VerificationResult:
        data = verification_data or {}
        try:
            if method == "stripe":
                return self._verify_stripe(data)
            if method in ("google_play", "google_pay"):
                return self._verify_google(data)
            if method == "apple":
                return self._verify_apple(data)
        except Exception as exc:
            logger.warning("purchase verification failed for %s: %s", method, exc)
            return _failure(f"verification_error: {exc}")
        return _failure("unsupported_payment_method")

    def _verify_stripe(self, data: dict) -> VerificationResult:
        intent_id = data.get("paymentIntentId")
        if not intent_id:
            return _failure("missing_payment_intent")
        intent = self.stripe_gateway.retrieve_payment_intent(intent_id)
        if intent.get("status") != "succeeded":
            return _failure(f"payment_intent_{intent.get('status')}")
        return VerificationResult(success=True, transaction_id=intent_id)

    def _verify_google(self, data: dict) -> VerificationResult:
        token = data.get("purchaseToken")
        if not token:
            return _failure("missing_purchase_token")
        response = self.google_client.get_subscription_v2(token)
        is_active = response.get("subscriptionState") == "SUBSCRIPTION_STATE_ACTIVE"
        # testPurchase arrives as an empty object
        is_test = response.get("testPurchase") is not None
        if not (is_active and (is_test or response.get("paymentState") == 1)):
            logger.info(
                "google purchase not verified: state=%s paymentState=%s",
                response.get("subscriptionState"),
                response.get("paymentState"),
            )
            return _failure("google_subscription_not_active")

        line_items = response.get("lineItems") if isinstance(response.get("lineItems"), list) else []
        product_id = data.get("productId") or data.get("subscriptionId")
        item = next((x for x in line_items if x.get("productId") == product_id), line_items[0] if line_items else {})
        product_id = product_id or item.get("productId")

        if response.get("acknowledgementState") == "ACKNOWLEDGEMENT_STATE_PENDING" and product_id:
            self.google_client.acknowledge(product_id, token)

        return VerificationResult(
            success=True,
            transaction_id=data.get("transactionId") or response.get("latestOrderId"),
            product_id=product_id,
            expires_date=parse_iso_datetime(item.get("expiryTime")),
        )

    def _verify_apple(self, data: dict) -> VerificationResult:
        receipt = data.get("receiptData")
        product_id = data.get("productId")
        if not receipt:
            return _failure("missing_receipt")
        now = self.clock()

        if receipt.startswith("eyJ"):
            tx = decode_jws_unverified(receipt)
            if not tx:
                return _failure("malformed_jws")
            if product_id and tx.get("productId") != product_id:
                return _failure("product_mismatch")
            if tx.get("revocationDate"):
                return _failure("revoked")
            expires = epoch_ms_to_datetime(tx.get("expiresDate"))
            if expires is not None and expires <= now:
                return _failure("expired")
            return VerificationResult(
                success=True,
                transaction_id=str(tx.get("transactionId") or data.get("transactionId") or "") or None,
                original_transaction_id=str(tx.get("originalTransactionId") or "") or None,
                product_id=tx.get("productId"),
                expires_date=expires,
            )

        response = self.apple_receipts.verify_receipt(receipt)
        status_code = int(response.get("status") if response.get("status") is not None else -1)
        if status_code != 0:
            return _failure(f"receipt_status_{status_code}")
        latest_info = response.get("latest_receipt_info")
        if not isinstance(latest_info, list) or not latest_info:
            receipt_obj = response.get("receipt") if isinstance(response.get("receipt"), dict) else {}
            latest_info = receipt_obj.get("in_app") or []
        matches = [x for x in latest_info if not product_id or x.get("product_id") == product_id]
        if not matches:
            return _failure("product_not_in_receipt")

        def _ms(item: dict, key: str) -> int:
            try:
                return int(item.get(key) or 0)
            except (TypeError, ValueError):
                return 0

        latest = max(matches, key=lambda x: (_ms(x, "expires_date_ms"), _ms(x, "purchase_date_ms")))
        if latest.get("cancellation_date") or latest.get("cancellation_date_ms"):
            return _failure("revoked")
        expires = epoch_ms_to_datetime(latest.get("expires_date_ms"))
        if expires is not None and expires <= now:
            return _failure("expired")
        return VerificationResult(
            success=True,
            transaction_id=str(latest.get("transaction_id") or data.get("transactionId") or "") or None,
            original_transaction_id=str(latest.get("original_transaction_id") or "") or None,
            product_id=latest.get("product_id"),
            expires_date=expires,
        )
