"""Bundle engine.

A bundle sells a fixed set of products at one offer price. The original
price is the sum of catalog prices at creation and stays frozen; savings
are recomputed only when the bundle price changes.

Purchases update the sold counter, the per-customer tally and the tracked
stock in one compare-and-swap on the bundle's version.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from core.observability.logging_setup import log_event
from core.resilience.retry import retry_with_backoff
from patterns.domain_config import StorefrontConfig
from patterns.rules_engine import check_allowance, check_status, check_within_window, evaluate_rules
from verticals.storefront.config import config as default_config
from verticals.storefront.errors import (
    BundleUnavailable,
    InsufficientStock,
    InvalidBundlePrice,
    NotFound,
    PerCustomerLimitExceeded,
    ReservationConflict,
)
from verticals.storefront.models.schemas import BundleItemInput
from verticals.storefront.money import (
    ZERO,
    DiscountRule,
    FixedDiscount,
    PercentageDiscount,
    apply_discount,
    percentage_of,
    round_money,
    rule_to_dict,
)
from verticals.storefront.ports import Catalog, ProductInfo
from verticals.storefront.slugs import slugify, unique_slug

logger = logging.getLogger(__name__)


class BundleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"
    EXPIRED = "expired"


@dataclass(frozen=True)
class BundleItem:
    product_id: str
    quantity: int = 1
    rule: Optional[DiscountRule] = None
    name: str = ""
    unit_price: Decimal = ZERO  # catalog price when the bundle was created

    @property
    def offer_price(self) -> Decimal:
        """Per-unit price after this item's own discount rule."""
        return apply_discount(self.unit_price, self.rule)

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "offer_price": str(self.offer_price),
            "rule": rule_to_dict(self.rule),
        }


@dataclass
class BundleInventory:
    total_stock: Optional[int] = None  # None = not tracked
    low_stock_threshold: int = 10
    allow_backorder: bool = False


@dataclass
class BundleLimits:
    per_customer: int = 0  # 0 = unlimited
    total_quantity: int = 0  # 0 = unlimited
    sold_quantity: int = 0


@dataclass
class ProductBundle:
    id: str
    name: str
    slug: str
    items: list[BundleItem]
    original_price: Decimal
    bundle_price: Decimal
    savings_amount: Decimal = ZERO
    savings_percentage: int = 0
    inventory: BundleInventory = field(default_factory=BundleInventory)
    limits: BundleLimits = field(default_factory=BundleLimits)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    status: BundleStatus = BundleStatus.ACTIVE
    description: str = ""
    customer_purchases: dict[str, int] = field(default_factory=dict)
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def recompute_savings(self) -> None:
        self.savings_amount = round_money(self.original_price - self.bundle_price)
        self.savings_percentage = percentage_of(self.savings_amount, self.original_price)

    @property
    def remaining_allowance(self) -> Optional[int]:
        if self.limits.total_quantity <= 0:
            return None
        return max(self.limits.total_quantity - self.limits.sold_quantity, 0)

    @property
    def available_units(self) -> Optional[int]:
        """Units purchasable right now; None means no limit applies."""
        caps = []
        if self.remaining_allowance is not None:
            caps.append(self.remaining_allowance)
        if self.inventory.total_stock is not None and not self.inventory.allow_backorder:
            caps.append(max(self.inventory.total_stock, 0))
        return min(caps) if caps else None

    @property
    def is_low_stock(self) -> bool:
        stock = self.inventory.total_stock
        return stock is not None and stock <= self.inventory.low_stock_threshold

    def is_available(self, now: datetime) -> bool:
        if self.status != BundleStatus.ACTIVE:
            return False
        if self.remaining_allowance == 0:
            return False
        return check_within_window(now, self.valid_from, self.valid_until).passed

    def as_product(self) -> ProductInfo:
        """Catalog-shaped view used for cart lines."""
        units = self.available_units
        return ProductInfo(
            id=self.id,
            name=self.name,
            price=self.bundle_price,
            stock=units or 0,
            backorder_allowed=units is None,
            sku=self.slug,
        )

    def to_dict(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "items": [item.to_dict() for item in self.items],
            "pricing": {
                "original_price": str(self.original_price),
                "bundle_price": str(self.bundle_price),
                "savings_amount": str(self.savings_amount),
                "savings_percentage": self.savings_percentage,
            },
            "inventory": {
                "total_stock": self.inventory.total_stock,
                "low_stock_threshold": self.inventory.low_stock_threshold,
                "allow_backorder": self.inventory.allow_backorder,
            },
            "limits": {
                "per_customer": self.limits.per_customer,
                "total_quantity": self.limits.total_quantity,
                "sold_quantity": self.limits.sold_quantity,
            },
            "validity": {
                "start": self.valid_from.isoformat() if self.valid_from else None,
                "end": self.valid_until.isoformat() if self.valid_until else None,
            },
            "status": self.status.value,
            "is_available": self.is_available(now),
        }


def _as_bundle_item(entry) -> BundleItem:
    if isinstance(entry, BundleItem):
        return entry
    if isinstance(entry, (tuple, list)):
        return BundleItem(product_id=entry[0], quantity=entry[1])
    item_input = entry if isinstance(entry, BundleItemInput) else BundleItemInput.model_validate(entry)
    rule = None
    if item_input.discount_value > ZERO:
        if item_input.discount_type == "percentage":
            rule = PercentageDiscount(item_input.discount_value)
        else:
            rule = FixedDiscount(item_input.discount_value)
    return BundleItem(product_id=item_input.product_id, quantity=item_input.quantity, rule=rule)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class BundleEngine:
    """Owns bundles and their purchase allowance.

    Usage::

        engine = BundleEngine(catalog)
        bundle = await engine.create_bundle("Starter kit", [("p1", 1), ("p2", 2)], Decimal("80"))
        engine.validate_for_purchase(bundle.id, 1)
        await engine.purchase(bundle.id, 1, customer_id="u1")
    """

    def __init__(
        self,
        catalog: Catalog,
        clock: Optional[Callable[[], datetime]] = None,
        config: Optional[StorefrontConfig] = None,
    ):
        self.catalog = catalog
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.config = config or default_config
        self._bundles: dict[str, ProductBundle] = {}
        self._lock = threading.Lock()

    # -- Creation and pricing --

    async def create_bundle(
        self,
        name: str,
        items: list,
        bundle_price,
        *,
        slug: Optional[str] = None,
        description: str = "",
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        per_customer: int = 0,
        total_quantity: int = 0,
        total_stock: Optional[int] = None,
        low_stock_threshold: int = 10,
        allow_backorder: bool = False,
    ) -> ProductBundle:
        """Create a bundle from `items`.

        Each item is a `BundleItem`, a `BundleItemInput` (or its dict), or a
        `(product_id, quantity)` pair. The original price is the sum of live
        catalog prices times quantities.
        """
        resolved: list[BundleItem] = []
        original = ZERO
        for entry in items:
            item = _as_bundle_item(entry)
            if item.quantity < 1:
                raise ValueError("Bundle item quantity must be at least 1")
            product = await self.catalog.get_product(item.product_id)
            resolved.append(BundleItem(
                product_id=product.id,
                quantity=item.quantity,
                rule=item.rule,
                name=product.name,
                unit_price=product.price,
            ))
            original += product.price * item.quantity

        original = round_money(original)
        price = round_money(bundle_price)
        self._check_price(price, original)

        bundle = ProductBundle(
            id=uuid.uuid4().hex,
            name=name,
            slug=slug or slugify(name),
            items=resolved,
            original_price=original,
            bundle_price=price,
            inventory=BundleInventory(total_stock, low_stock_threshold, allow_backorder),
            limits=BundleLimits(per_customer=per_customer, total_quantity=total_quantity),
            valid_from=valid_from,
            valid_until=valid_until,
            description=description,
        )
        bundle.recompute_savings()
        with self._lock:
            bundle.slug = unique_slug(bundle.slug, {b.slug for b in self._bundles.values()})
            self._bundles[bundle.id] = bundle

        log_event(logger, "info", "bundle.created", bundle_id=bundle.id,
                  original_price=str(original), bundle_price=str(price))
        return bundle

    @staticmethod
    def _check_price(price: Decimal, original: Decimal) -> None:
        if price <= ZERO or price >= original:
            raise InvalidBundlePrice(
                f"Bundle price {price} must be positive and below the original price {original}",
                {"bundle_price": str(price), "original_price": str(original)},
            )

    def get_bundle(self, bundle_id: str) -> ProductBundle:
        """Look a bundle up by id or slug."""
        bundle = self._bundles.get(bundle_id)
        if bundle is None:
            bundle = next((b for b in list(self._bundles.values()) if b.slug == bundle_id), None)
        if bundle is None:
            raise NotFound(f"Bundle {bundle_id} not found", {"bundle_id": bundle_id})
        return bundle

    def set_bundle_price(self, bundle_id: str, price) -> ProductBundle:
        price = round_money(price)
        with self._lock:
            bundle = self.get_bundle(bundle_id)
            self._check_price(price, bundle.original_price)
            bundle.bundle_price = price
            bundle.recompute_savings()
            bundle.version += 1
        return bundle

    def recompute_savings(self, bundle_id: Optional[str] = None) -> None:
        """Recompute savings for one bundle, or all of them."""
        with self._lock:
            targets = [self.get_bundle(bundle_id)] if bundle_id else list(self._bundles.values())
            for bundle in targets:
                bundle.recompute_savings()

    def set_status(self, bundle_id: str, status: BundleStatus) -> ProductBundle:
        with self._lock:
            bundle = self.get_bundle(bundle_id)
            bundle.status = BundleStatus(status)
            bundle.version += 1
        return bundle

    # -- Validation --

    def validate_for_purchase(self, bundle_id: str, quantity: int = 1) -> ProductBundle:
        """Check status, then remaining allowance, then validity window."""
        bundle = self.get_bundle(bundle_id)
        result = evaluate_rules(
            check_status(bundle.status.value, BundleStatus.ACTIVE.value, "Bundle"),
            check_allowance(bundle.limits.total_quantity, bundle.limits.sold_quantity, quantity,
                            rule_name="total_quantity"),
            check_within_window(self.clock(), bundle.valid_from, bundle.valid_until),
        )
        failure = result.first_failure
        if failure is None:
            return bundle

        details = {"bundle_id": bundle_id, "rule": failure.rule_name, **failure.details}
        if failure.rule_name == "total_quantity":
            raise InsufficientStock(failure.message, details)
        raise BundleUnavailable(failure.message, details)

    def list_available(self) -> list[ProductBundle]:
        now = self.clock()
        return [b for b in self._bundles.values() if b.is_available(now)]

    # -- Purchase allowance --

    async def purchase(self, bundle_id: str, quantity: int, customer_id: str) -> ProductBundle:
        """Count `quantity` units sold to `customer_id`, atomically."""
        try:
            bundle = await retry_with_backoff(
                self._try_purchase, bundle_id, quantity, customer_id,
                retry_on=(ReservationConflict,),
                max_retries=self.config.flash_sales.reservation_max_retries,
                backoff_base=self.config.flash_sales.reservation_backoff_base,
                backoff_max=self.config.flash_sales.reservation_backoff_max,
            )
        except ReservationConflict as exc:
            raise InsufficientStock("Bundle is in high demand, please retry",
                                    {"bundle_id": bundle_id, **exc.details}) from exc

        log_event(logger, "info", "bundle.purchased", bundle_id=bundle_id,
                  customer_id=customer_id, qty=quantity, sold=bundle.limits.sold_quantity)
        return bundle

    def _try_purchase(self, bundle_id: str, quantity: int, customer_id: str) -> ProductBundle:
        bundle = self.validate_for_purchase(bundle_id, quantity)
        expected_version = bundle.version
        bought = bundle.customer_purchases.get(customer_id, 0)

        per_customer = check_allowance(bundle.limits.per_customer, bought, quantity, rule_name="per_customer")
        if not per_customer.passed:
            raise PerCustomerLimitExceeded(
                f"Limit of {bundle.limits.per_customer} per customer for {bundle.name}",
                {"bundle_id": bundle_id, **per_customer.details},
            )
        stock = bundle.inventory.total_stock
        if stock is not None and stock < quantity and not bundle.inventory.allow_backorder:
            raise InsufficientStock(
                f"Insufficient stock for {bundle.name}",
                {"bundle_id": bundle_id, "available": stock, "requested": quantity},
            )

        def apply(b: ProductBundle) -> None:
            b.limits.sold_quantity += quantity
            b.customer_purchases[customer_id] = bought + quantity
            if b.inventory.total_stock is not None:
                b.inventory.total_stock -= quantity

        return self._compare_and_swap(bundle_id, expected_version, apply)

    async def release(self, bundle_id: str, quantity: int, customer_id: Optional[str] = None) -> ProductBundle:
        """Reverse a purchase (cancellation or failed checkout)."""
        with self._lock:
            bundle = self.get_bundle(bundle_id)
            quantity = min(quantity, bundle.limits.sold_quantity)
            bundle.limits.sold_quantity -= quantity
            if bundle.inventory.total_stock is not None:
                bundle.inventory.total_stock += quantity
            if customer_id is not None and customer_id in bundle.customer_purchases:
                remaining = bundle.customer_purchases[customer_id] - quantity
                if remaining > 0:
                    bundle.customer_purchases[customer_id] = remaining
                else:
                    del bundle.customer_purchases[customer_id]
            bundle.version += 1

        log_event(logger, "info", "bundle.released", bundle_id=bundle_id,
                  customer_id=customer_id, qty=quantity, sold=bundle.limits.sold_quantity)
        return bundle

    def _compare_and_swap(self, bundle_id: str, expected_version: int,
                          mutate: Callable[[ProductBundle], None]) -> ProductBundle:
        with self._lock:
            bundle = self.get_bundle(bundle_id)
            if bundle.version != expected_version:
                raise ReservationConflict(
                    "Bundle changed concurrently",
                    {"bundle_id": bundle_id, "expected_version": expected_version, "version": bundle.version},
                )
            mutate(bundle)
            bundle.version += 1
            return bundle
