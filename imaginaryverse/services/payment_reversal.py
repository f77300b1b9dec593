from __future__ import annotations

import logging

from imaginaryverse.services.store_clients import GooglePlayClient, StripeGateway

logger = logging.getLogger(__name__)


class PaymentReversalService:
    """Compensates a verified payment whose local bookkeeping failed.

    Stripe charges are refunded and Google purchases revoked. Apple offers no
    server-side refund, so those are flagged for manual review.
    """

    def __init__(self, *, stripe_gateway: StripeGateway | None = None, google_client: GooglePlayClient | None = None):
        self.stripe_gateway = stripe_gateway or StripeGateway()
        self.google_client = google_client or GooglePlayClient()

    def reverse(self, payment_method: str, verification_data: dict, *, transaction_id: str | None = None) -> dict:
        data = verification_data or {}
        try:
            if payment_method == "stripe":
                intent_id = data.get("paymentIntentId") or transaction_id
                if not intent_id:
                    return {"status": "skipped", "method": payment_method, "detail": "missing_payment_intent"}
                refund = self.stripe_gateway.refund(intent_id)
                return {"status": "refunded", "method": payment_method, "detail": refund.get("id")}
            if payment_method in ("google_play", "google_pay"):
                token = data.get("purchaseToken")
                if not token:
                    return {"status": "skipped", "method": payment_method, "detail": "missing_purchase_token"}
                self.google_client.revoke(token)
                return {"status": "revoked", "method": payment_method, "detail": None}
            if payment_method == "apple":
                logger.warning("apple purchase %s needs a manual refund", transaction_id)
                return {"status": "manual_review", "method": payment_method, "detail": transaction_id}
        except Exception as exc:
            logger.exception("payment reversal failed for %s %s", payment_method, transaction_id)
            return {"status": "failed", "method": payment_method, "detail": str(exc)}
        return {"status": "skipped", "method": payment_method, "detail": "unsupported_payment_method"}
