from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Callable
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

import stripe

from imaginaryverse.core.config import settings
from imaginaryverse.core.errors import StoreAuthError, StoreHttpError
from imaginaryverse.core.retry import call_with_retry
from imaginaryverse.core.security import (
    app_store_connect_token,
    app_store_server_token,
    google_service_account_assertion,
)


def _parse_payload(raw: str):
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


def _open_json(req: urlrequest.Request) -> dict:
    try:
        with urlrequest.urlopen(req, timeout=20) as resp:
            raw = resp.read().decode("utf-8")
    except urlerror.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        raise StoreHttpError(exc.code, _parse_payload(body), url=req.full_url) from exc
    out = _parse_payload(raw)
    return out if isinstance(out, dict) else {"data": out}


def _http_json_post(url: str, payload: dict, *, headers: dict[str, str] | None = None) -> dict:
    req_headers = {"Content-Type": "application/json"}
    if headers:
        req_headers.update(headers)
    body = json.dumps(payload).encode("utf-8")
    req = urlrequest.Request(url=url, method="POST", data=body, headers=req_headers)
    return _open_json(req)


def _http_form_post(url: str, payload: dict[str, str]) -> dict:
    body = urlparse.urlencode(payload).encode("utf-8")
    req = urlrequest.Request(
        url=url,
        method="POST",
        data=body,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    return _open_json(req)


def _http_json_get(url: str, *, headers: dict[str, str]) -> dict:
    req = urlrequest.Request(url=url, method="GET", headers=headers)
    return _open_json(req)


def parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    txt = str(value).strip()
    if txt.endswith("Z"):
        txt = txt[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(txt)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def epoch_ms_to_datetime(value: str | int | None) -> datetime | None:
    if value in (None, "", 0):
        return None
    try:
        ms = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


class GooglePlayClient:
    """Play Developer API over a service-account bearer token."""

    def __init__(
        self,
        *,
        package_name: str | None = None,
        client_email: str | None = None,
        private_key_pem: str | None = None,
        token_uri: str | None = None,
        api_url: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.package_name = package_name or settings.GOOGLE_PLAY_PACKAGE_NAME
        self.client_email = client_email or settings.GOOGLE_PLAY_SERVICE_ACCOUNT_EMAIL
        self.private_key_pem = private_key_pem or settings.GOOGLE_PLAY_SERVICE_ACCOUNT_PRIVATE_KEY_PEM
        self.token_uri = token_uri or settings.GOOGLE_PLAY_TOKEN_URI
        self.api_url = (api_url or settings.GOOGLE_PLAY_API_URL).rstrip("/")
        self.sleep = sleep
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and time.time() < self._token_expires_at - 60:
            return self._token
        if not self.client_email or not self.private_key_pem:
            raise NotImplementedError(
                "Set GOOGLE_PLAY_SERVICE_ACCOUNT_EMAIL and GOOGLE_PLAY_SERVICE_ACCOUNT_PRIVATE_KEY_PEM"
            )
        assertion = google_service_account_assertion(
            client_email=self.client_email,
            private_key_pem=self.private_key_pem,
            scope=settings.GOOGLE_PLAY_ANDROID_PUBLISHER_SCOPE,
            token_uri=self.token_uri,
        )
        try:
            payload = _http_form_post(
                self.token_uri,
                {
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": assertion,
                },
            )
        except StoreHttpError as exc:
            if exc.status in (400, 401, 403):
                raise StoreAuthError(f"Google Play token exchange rejected: {exc.payload}") from exc
            raise
        token = payload.get("access_token")
        if not token:
            raise StoreAuthError("Google Play token exchange returned no access_token")
        self._token = str(token)
        self._token_expires_at = time.time() + float(payload.get("expires_in") or 3600)
        return self._token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token()}", "Accept": "application/json"}

    def _app_url(self) -> str:
        if not self.package_name:
            raise NotImplementedError("Set GOOGLE_PLAY_PACKAGE_NAME to talk to Google Play")
        return f"{self.api_url}/applications/{urlparse.quote(self.package_name, safe='')}"

    def _get(self, url: str) -> dict:
        return call_with_retry(
            lambda: _http_json_get(url, headers=self._headers()),
            retries=settings.STORE_RETRY_ATTEMPTS,
            base_delay=settings.STORE_RETRY_BASE_DELAY_SECONDS,
            sleep=self.sleep,
        )

    def get_subscription_v2(self, purchase_token: str) -> dict:
        # Single attempt; only catalog listing retries.
        url = f"{self._app_url()}/purchases/subscriptionsv2/tokens/{urlparse.quote(purchase_token, safe='')}"
        return _http_json_get(url, headers=self._headers())

    def acknowledge(self, product_id: str, purchase_token: str) -> None:
        url = (
            f"{self._app_url()}/purchases/subscriptions/{urlparse.quote(product_id, safe='')}"
            f"/tokens/{urlparse.quote(purchase_token, safe='')}:acknowledge"
        )
        _http_json_post(url, {}, headers=self._headers())

    def revoke(self, purchase_token: str) -> dict:
        url = f"{self._app_url()}/purchases/subscriptionsv2/tokens/{urlparse.quote(purchase_token, safe='')}:revoke"
        return _http_json_post(url, {"revocationContext": {"fullRefund": {}}}, headers=self._headers())

    def list_subscriptions(self) -> list[dict]:
        items: list[dict] = []
        page_token: str | None = None
        while True:
            url = f"{self._app_url()}/subscriptions?pageSize=100"
            if page_token:
                url += f"&pageToken={urlparse.quote(page_token, safe='')}"
            page = self._get(url)
            items.extend(page.get("subscriptions") or [])
            page_token = page.get("nextPageToken")
            if not page_token:
                return items


class AppStoreServerClient:
    """App Store Server API: subscription status by original transaction id."""

    def __init__(
        self,
        *,
        issuer_id: str | None = None,
        key_id: str | None = None,
        private_key_pem: str | None = None,
        bundle_id: str | None = None,
        base_url: str | None = None,
    ):
        self.issuer_id = issuer_id or settings.APP_STORE_ISSUER_ID
        self.key_id = key_id or settings.APP_STORE_KEY_ID
        self.private_key_pem = private_key_pem or settings.APP_STORE_PRIVATE_KEY_PEM
        self.bundle_id = bundle_id or settings.APP_STORE_BUNDLE_ID
        self.base_url = (base_url or settings.APP_STORE_SERVER_API_URL).rstrip("/")

    def _token(self) -> str:
        if not self.issuer_id or not self.key_id or not self.private_key_pem:
            raise NotImplementedError("Set APP_STORE_ISSUER_ID, APP_STORE_KEY_ID and APP_STORE_PRIVATE_KEY_PEM")
        return app_store_server_token(
            issuer_id=self.issuer_id,
            key_id=self.key_id,
            private_key_pem=self.private_key_pem,
            bundle_id=self.bundle_id,
        )

    def get_subscription_statuses(self, original_transaction_id: str) -> dict:
        url = f"{self.base_url}/inApps/v1/subscriptions/{urlparse.quote(original_transaction_id, safe='')}"
        headers = {"Authorization": f"Bearer {self._token()}", "Content-Type": "application/json"}
        try:
            return _http_json_get(url, headers=headers)
        except StoreHttpError as exc:
            if exc.status == 401:
                raise StoreAuthError("App Store Server API rejected the credentials") from exc
            raise


class AppStoreConnectClient:
    """App Store Connect API listing of auto-renewable subscription products."""

    def __init__(
        self,
        *,
        app_id: str | None = None,
        issuer_id: str | None = None,
        key_id: str | None = None,
        private_key_pem: str | None = None,
        base_url: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.app_id = app_id or settings.APP_STORE_APP_ID
        self.issuer_id = issuer_id or settings.APP_STORE_ISSUER_ID
        self.key_id = key_id or settings.APP_STORE_KEY_ID
        self.private_key_pem = private_key_pem or settings.APP_STORE_PRIVATE_KEY_PEM
        self.base_url = (base_url or settings.APP_STORE_CONNECT_API_URL).rstrip("/")
        self.sleep = sleep

    def _headers(self) -> dict[str, str]:
        if not self.issuer_id or not self.key_id or not self.private_key_pem:
            raise NotImplementedError("Set APP_STORE_ISSUER_ID, APP_STORE_KEY_ID and APP_STORE_PRIVATE_KEY_PEM")
        token = app_store_connect_token(
            issuer_id=self.issuer_id,
            key_id=self.key_id,
            private_key_pem=self.private_key_pem,
        )
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    def _get(self, url: str, headers: dict[str, str]) -> dict:
        return call_with_retry(
            lambda: _http_json_get(url, headers=headers),
            retries=settings.STORE_RETRY_ATTEMPTS,
            base_delay=settings.STORE_RETRY_BASE_DELAY_SECONDS,
            sleep=self.sleep,
        )

    def _all_pages(self, url: str, headers: dict[str, str]) -> list[dict]:
        out: list[dict] = []
        next_url: str | None = url
        while next_url:
            page = self._get(next_url, headers)
            out.extend(page.get("data") or [])
            links = page.get("links") if isinstance(page.get("links"), dict) else {}
            next_url = links.get("next")
        return out

    def list_subscription_products(self) -> list[dict]:
        if not self.app_id:
            raise NotImplementedError("Set APP_STORE_APP_ID to list App Store subscriptions")
        headers = self._headers()
        products: list[dict] = []
        groups = self._all_pages(f"{self.base_url}/apps/{self.app_id}/subscriptionGroups", headers)
        for group in groups:
            subs = self._all_pages(f"{self.base_url}/subscriptionGroups/{group['id']}/subscriptions", headers)
            for sub in subs:
                attributes = sub.get("attributes") or {}
                product_id = attributes.get("productId")
                if not product_id:
                    continue
                name = attributes.get("name") or product_id
                description = ""
                locs = self._all_pages(f"{self.base_url}/subscriptions/{sub['id']}/subscriptionLocalizations", headers)
                if locs:
                    en = next((x for x in locs if (x.get("attributes") or {}).get("locale") == "en-US"), None)
                    chosen = (en or locs[0]).get("attributes") or {}
                    name = chosen.get("name") or name
                    description = chosen.get("description") or ""
                prices = self._get(
                    f"{self.base_url}/subscriptions/{sub['id']}/prices"
                    "?include=subscriptionPricePoint,territory&filter[territory]=USA",
                    headers,
                )
                point = next(
                    (i for i in prices.get("included") or [] if i.get("type") == "subscriptionPricePoints"),
                    None,
                )
                price = (point or {}).get("attributes", {}).get("customerPrice")
                products.append(
                    {
                        "product_id": product_id,
                        "name": name,
                        "description": description,
                        "price": float(price or 0),
                        "period": attributes.get("subscriptionPeriod"),
                        "state": attributes.get("state"),
                    }
                )
        return products


class AppleReceiptClient:
    """Legacy verifyReceipt endpoint."""

    def __init__(self, *, shared_secret: str | None = None, sandbox: bool | None = None):
        self.shared_secret = shared_secret or settings.APP_STORE_SHARED_SECRET
        self.sandbox = settings.APP_STORE_SANDBOX if sandbox is None else sandbox

    def verify_receipt(self, receipt_data: str) -> dict:
        if not self.shared_secret:
            raise NotImplementedError("Set APP_STORE_SHARED_SECRET to verify App Store receipts")
        payload = {
            "receipt-data": receipt_data,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }
        if self.sandbox:
            return _http_json_post(settings.APP_STORE_VERIFY_URL_SANDBOX, payload)
        response = _http_json_post(settings.APP_STORE_VERIFY_URL_PROD, payload)
        if int(response.get("status") or -1) == 21007:
            response = _http_json_post(settings.APP_STORE_VERIFY_URL_SANDBOX, payload)
        return response


class StripeGateway:
    def __init__(self, *, api_key: str | None = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY

    def _client(self):
        if not self.api_key:
            raise NotImplementedError("Set STRIPE_SECRET_KEY to use Stripe")
        stripe.api_key = self.api_key
        stripe.max_network_retries = settings.STORE_RETRY_ATTEMPTS
        return stripe

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        intent = self._client().PaymentIntent.retrieve(payment_intent_id)
        return {"id": intent.id, "status": intent.status, "amount": getattr(intent, "amount", None)}

    def create_payment_intent(self, *, amount_cents: int, currency: str, metadata: dict) -> dict:
        intent = self._client().PaymentIntent.create(
            amount=amount_cents,
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )
        return {"id": intent.id, "client_secret": intent.client_secret, "status": intent.status}

    def refund(self, payment_intent_id: str) -> dict:
        refund = self._client().Refund.create(payment_intent=payment_intent_id)
        return {"id": refund.id, "status": refund.status}
