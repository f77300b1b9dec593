from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Protocol

import sqlalchemy as sa
from sqlalchemy.orm import Session

from imaginaryverse.core.config import settings
from imaginaryverse.core.errors import StoreError, StoreSyncError
from imaginaryverse.core.security import now_utc
from imaginaryverse.models.plan import PLAN_TYPES, Plan
from imaginaryverse.services.store_clients import AppStoreConnectClient, GooglePlayClient

logger = logging.getLogger(__name__)

GOOGLE = "google"
APPLE = "apple"
PLATFORMS = (GOOGLE, APPLE)

# (total, image, prompt) granted per billing period
CREDIT_ALLOTMENTS: dict[str, tuple[int, int, int]] = {
    "free": (4, 0, 4),
    "trial": (20, 10, 10),
    "basic": (50, 25, 25),
    "standard": (100, 50, 50),
    "premium": (200, 100, 100),
}

_TYPE_KEYWORDS = ("premium", "standard", "basic", "trial", "free")

_GOOGLE_PERIODS = {"P1W": "weekly", "P1M": "monthly", "P3M": "quarterly", "P6M": "semiannual", "P1Y": "yearly"}
_APPLE_PERIODS = {
    "ONE_WEEK": "weekly",
    "ONE_MONTH": "monthly",
    "THREE_MONTHS": "quarterly",
    "SIX_MONTHS": "semiannual",
    "ONE_YEAR": "yearly",
}


@dataclass(frozen=True)
class StoreProduct:
    product_id: str
    description: str = ""
    price: float = 0.0
    billing_period: str | None = None


class StorefrontSource(Protocol):
    def list_products(self, platform: str) -> list[StoreProduct]:
        ...


def product_key(product_id: str | None) -> str:
    """Canonical cross-platform key: last dotted segment, lower case, underscores."""
    raw = (product_id or "").strip().split(".")[-1]
    return raw.lower().replace("-", "_")


def _product_type_map() -> dict[str, str]:
    out: dict[str, str] = {}
    raw = (settings.PLAN_PRODUCT_TYPE_MAP or "").strip()
    if not raw:
        return out
    for item in [p.strip() for p in raw.split(",") if p.strip()]:
        sep = "=" if "=" in item else ":"
        if sep not in item:
            continue
        key, plan_type = [x.strip() for x in item.split(sep, 1)]
        if plan_type.lower() in PLAN_TYPES and key:
            out[product_key(key)] = plan_type.lower()
    return out


def infer_plan_type(product_id: str) -> str:
    key = product_key(product_id)
    mapped = _product_type_map().get(key)
    if mapped:
        return mapped
    for keyword in _TYPE_KEYWORDS:
        if keyword in key:
            return keyword
    return "standard"


def plan_name_for(product_id: str) -> str:
    key = product_key(product_id)
    words = [w for w in re.split(r"[_\s]+", key) if w]
    return " ".join(w.capitalize() for w in words) or "Plan"


def parse_features(description: str | None) -> list[str]:
    if not description:
        return []
    parts = re.split(r"[\n;•]+", description)
    return [p.strip(" -*\t") for p in parts if p.strip(" -*\t")]


def google_store_products(raw_items: list[dict]) -> list[StoreProduct]:
    products: list[StoreProduct] = []
    for item in raw_items:
        product_id = str(item.get("productId") or "").strip()
        if not product_id or item.get("archived"):
            continue
        listings = item.get("listings") if isinstance(item.get("listings"), list) else []
        listing = next((x for x in listings if x.get("languageCode") == "en-US"), listings[0] if listings else {})
        benefits = listing.get("benefits") if isinstance(listing.get("benefits"), list) else []
        description = "\n".join(str(b) for b in benefits) or str(listing.get("description") or "")

        base_plans = item.get("basePlans") if isinstance(item.get("basePlans"), list) else []
        live_plans = [b for b in base_plans if str(b.get("state") or "ACTIVE").upper() == "ACTIVE"]
        if base_plans and not live_plans:
            continue
        base = live_plans[0] if live_plans else {}
        renewing = base.get("autoRenewingBasePlanType") if isinstance(base.get("autoRenewingBasePlanType"), dict) else {}
        period = _GOOGLE_PERIODS.get(str(renewing.get("billingPeriodDuration") or "").upper())

        price = 0.0
        for region in base.get("regionalConfigs") or []:
            if region.get("regionCode") == "US":
                money = region.get("price") or {}
                price = float(money.get("units") or 0) + float(money.get("nanos") or 0) / 1e9
                break
        products.append(StoreProduct(product_id=product_id, description=description, price=round(price, 2), billing_period=period))
    return products


def apple_store_products(raw_items: list[dict]) -> list[StoreProduct]:
    products: list[StoreProduct] = []
    for item in raw_items:
        product_id = str(item.get("product_id") or "").strip()
        if not product_id:
            continue
        products.append(
            StoreProduct(
                product_id=product_id,
                description=str(item.get("description") or ""),
                price=float(item.get("price") or 0),
                billing_period=_APPLE_PERIODS.get(str(item.get("period") or "").upper()),
            )
        )
    return products


class StoreCatalogSource:
    """Lists storefront products through the Google Play and App Store Connect clients."""

    def __init__(self, *, google_client=None, apple_client=None):
        self.google_client = google_client
        self.apple_client = apple_client

    def list_products(self, platform: str) -> list[StoreProduct]:
        if platform == GOOGLE:
            if self.google_client is None:
                self.google_client = GooglePlayClient()
            return google_store_products(self.google_client.list_subscriptions())
        if platform == APPLE:
            if self.apple_client is None:
                self.apple_client = AppStoreConnectClient()
            return apple_store_products(self.apple_client.list_subscription_products())
        raise ValueError(f"unknown platform {platform!r}")


class PlanCatalog:
    def __init__(self, db: Session, *, source: StorefrontSource | None = None, clock: Callable = now_utc):
        self.db = db
        self.source = source or StoreCatalogSource()
        self.clock = clock

    def get_by_id(self, plan_id) -> Plan | None:
        if plan_id is None:
            return None
        return self.db.get(Plan, plan_id)

    def get_by_type(self, plan_type: str) -> Plan | None:
        if plan_type == "free":
            return self.ensure_free_plan()
        return self.db.execute(
            sa.select(Plan)
            .where(Plan.type == plan_type, Plan.is_active.is_(True))
            .order_by(Plan.price.asc(), Plan.created_at.asc())
            .limit(1)
        ).scalars().first()

    def list_active(self) -> list[Plan]:
        self.ensure_free_plan()
        return list(
            self.db.execute(
                sa.select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.price.asc(), Plan.name.asc())
            ).scalars()
        )

    def ensure_free_plan(self) -> Plan:
        plan = self.db.execute(
            sa.select(Plan).where(Plan.type == "free").order_by(Plan.created_at.asc()).limit(1)
        ).scalars().first()
        if plan is None:
            total, image, prompt = (
                settings.FREE_TOTAL_CREDITS,
                settings.FREE_IMAGE_CREDITS,
                settings.FREE_PROMPT_CREDITS,
            )
            plan = Plan(
                name=settings.FREE_PLAN_NAME,
                type="free",
                description="Daily free credits",
                price=0,
                total_credits=total,
                image_generation_credits=image,
                prompt_generation_credits=prompt,
                features=[],
                version=1,
                billing_period="daily",
                is_active=True,
            )
            self.db.add(plan)
            self.db.flush()
            logger.info("created free plan %s", plan.id)
        elif not plan.is_active:
            plan.is_active = True
        return plan

    def _match_existing(self, platform: str, product: StoreProduct, plans: list[Plan]) -> Plan | None:
        if platform == GOOGLE:
            return next((p for p in plans if p.google_product_id == product.product_id), None)
        hit = next((p for p in plans if p.apple_product_id == product.product_id), None)
        if hit is not None:
            return hit
        key = product_key(product.product_id)
        return next(
            (p for p in plans if p.apple_product_id is None and p.google_product_id and product_key(p.google_product_id) == key),
            None,
        )

    def sync_from_storefront(self, platform: str) -> dict:
        if platform not in PLATFORMS:
            raise ValueError(f"unknown platform {platform!r}")

        # Everything is fetched before any row is touched.
        try:
            products = self.source.list_products(platform)
        except (StoreError, NotImplementedError, OSError, ValueError) as exc:
            raise StoreSyncError(f"{platform} catalog fetch failed: {exc}") from exc

        now = self.clock()
        self.ensure_free_plan()
        plans = list(self.db.execute(sa.select(Plan)).scalars())
        inserted = 0
        updated = 0
        seen: set[str] = set()

        for product in products:
            if product.product_id in seen:
                continue
            seen.add(product.product_id)
            plan_type = infer_plan_type(product.product_id)
            if plan_type == "free":
                continue
            total, image, prompt = CREDIT_ALLOTMENTS[plan_type]
            fields = {
                "name": plan_name_for(product.product_id),
                "type": plan_type,
                "description": product.description,
                "price": product.price,
                "total_credits": total,
                "image_generation_credits": image,
                "prompt_generation_credits": prompt,
                "features": parse_features(product.description),
                "billing_period": product.billing_period,
                "is_active": True,
            }
            existing = self._match_existing(platform, product, plans)
            if existing is not None:
                for key, value in fields.items():
                    setattr(existing, key, value)
                if platform == GOOGLE:
                    existing.google_product_id = product.product_id
                else:
                    existing.apple_product_id = product.product_id
                existing.version = int(existing.version or 0) + 1
                existing.updated_at = now
                updated += 1
            else:
                plan = Plan(
                    **fields,
                    version=1,
                    google_product_id=product.product_id if platform == GOOGLE else None,
                    apple_product_id=product.product_id if platform == APPLE else None,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(plan)
                plans.append(plan)
                inserted += 1

        deactivated = 0
        for plan in plans:
            store_id = plan.google_product_id if platform == GOOGLE else plan.apple_product_id
            if not store_id or store_id in seen or plan.is_free or not plan.is_active:
                continue
            plan.is_active = False
            plan.updated_at = now
            deactivated += 1

        self.db.flush()
        logger.info(
            "%s plan sync: fetched=%s inserted=%s updated=%s deactivated=%s",
            platform,
            len(products),
            inserted,
            updated,
            deactivated,
        )
        return {
            "platform": platform,
            "fetched": len(products),
            "inserted": inserted,
            "updated": updated,
            "deactivated": deactivated,
        }
