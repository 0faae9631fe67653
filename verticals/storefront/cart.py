"""Cart aggregator.

A `Cart` holds line items and an optional coupon and recomputes
subtotal -> discount -> total after every mutation. Unit prices are
snapshotted when a line is added and never re-read from the catalog.

`CartService` owns one cart per user (created lazily) and resolves the
price and stock source for each add: the catalog for plain products, the
flash sale engine for sale items, the bundle engine for bundles.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from patterns.rules_engine import check_minimum_purchase, check_stock_availability
from verticals.storefront.config import config as default_config
from verticals.storefront.errors import (
    CouponNotEligible,
    FlashSaleNotActive,
    InsufficientStock,
    NotFound,
    ProductUnavailable,
)
from verticals.storefront.models.schemas import CartSnapshot
from verticals.storefront.money import (
    ZERO,
    D,
    DiscountRule,
    FixedDiscount,
    PercentageDiscount,
    discount_with_minimum,
    round_money,
    rule_from_dict,
    rule_to_dict,
)
from verticals.storefront.ports import Catalog, ProductInfo

if TYPE_CHECKING:
    from patterns.domain_config import StorefrontConfig
    from verticals.storefront.bundles import BundleEngine
    from verticals.storefront.flash_sales import FlashSaleEngine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Lines and coupons
# ---------------------------------------------------------------------------

class LineSource(str, Enum):
    """Where a line's price and stock come from."""

    PLAIN = "plain"
    FLASH_SALE = "flash_sale"
    BUNDLE = "bundle"


@dataclass(frozen=True)
class Variant:
    """Optional variant selection; `price` overrides the catalog price."""

    name: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    attributes: tuple[tuple[str, str], ...] = ()

    def key(self) -> tuple:
        return (self.name, self.sku, self.attributes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "sku": self.sku,
            "price": None if self.price is None else str(self.price),
            "attributes": [{"name": n, "value": v} for n, v in self.attributes],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["Variant"]:
        if not data:
            return None
        price = data.get("price")
        return cls(
            name=data.get("name"),
            sku=data.get("sku"),
            price=None if price is None else D(price),
            attributes=tuple((a["name"], a["value"]) for a in data.get("attributes", [])),
        )


@dataclass
class CartLine:
    product_id: str
    quantity: int
    unit_price: Decimal
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    sku: Optional[str] = None
    image: Optional[str] = None
    variant: Optional[Variant] = None
    source: LineSource = LineSource.PLAIN
    source_id: Optional[str] = None  # flash sale id or bundle id
    saved_for_later: bool = False
    added_at: datetime = field(default_factory=_utcnow)

    @property
    def line_total(self) -> Decimal:
        return round_money(self.unit_price * self.quantity)

    def merge_key(self) -> tuple:
        variant_key = self.variant.key() if self.variant else None
        return (self.product_id, variant_key, self.source, self.source_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "image": self.image,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "line_total": str(self.line_total),
            "variant": self.variant.to_dict() if self.variant else None,
            "source": self.source.value,
            "source_id": self.source_id,
            "saved_for_later": self.saved_for_later,
            "added_at": self.added_at.isoformat(),
        }


@dataclass(frozen=True)
class Coupon:
    """Coupon embedded in a cart or order; never stored on its own."""

    code: str
    rule: DiscountRule
    minimum_purchase: Decimal = ZERO

    @classmethod
    def percentage(cls, code: str, value, cap=None, minimum_purchase=ZERO) -> "Coupon":
        return cls(code, PercentageDiscount(D(value), None if cap is None else D(cap)), D(minimum_purchase))

    @classmethod
    def fixed(cls, code: str, amount, minimum_purchase=ZERO) -> "Coupon":
        return cls(code, FixedDiscount(D(amount)), D(minimum_purchase))

    def discount_for(self, subtotal) -> Decimal:
        return discount_with_minimum(self.rule, subtotal, self.minimum_purchase)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "rule": rule_to_dict(self.rule),
            "minimum_purchase": str(self.minimum_purchase),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["Coupon"]:
        if not data:
            return None
        return cls(data["code"], rule_from_dict(data["rule"]), D(data.get("minimum_purchase")))


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

@dataclass
class Cart:
    """One user's cart. Totals are derived; never assign them directly."""

    user_id: str
    currency: str = "USD"
    lines: list[CartLine] = field(default_factory=list)
    coupon: Optional[Coupon] = None
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    total: Decimal = ZERO
    updated_at: Optional[datetime] = None
    clock: Callable[[], datetime] = field(default=_utcnow, repr=False, compare=False)

    def __post_init__(self):
        if self.updated_at is None:
            self.updated_at = self.clock()

    # -- Derived totals --

    def recompute(self) -> "Cart":
        subtotal = sum((line.line_total for line in self.active_lines), ZERO)
        discount = self.coupon.discount_for(subtotal) if self.coupon else ZERO
        self.subtotal = round_money(subtotal)
        self.discount = min(discount, self.subtotal)
        self.total = round_money(self.subtotal - self.discount)
        self.updated_at = self.clock()
        return self

    @property
    def active_lines(self) -> list[CartLine]:
        return [line for line in self.lines if not line.saved_for_later]

    @property
    def saved_lines(self) -> list[CartLine]:
        return [line for line in self.lines if line.saved_for_later]

    @property
    def is_empty(self) -> bool:
        return not self.active_lines

    def get_line(self, line_id: str) -> CartLine:
        for line in self.lines:
            if line.id == line_id:
                return line
        raise NotFound(f"Cart line {line_id} not found", {"line_id": line_id})

    def find_line(self, product_id: str, variant: Optional[Variant] = None,
                  source: LineSource = LineSource.PLAIN, source_id: Optional[str] = None) -> Optional[CartLine]:
        key = (product_id, variant.key() if variant else None, source, source_id)
        for line in self.lines:
            if line.merge_key() == key:
                return line
        return None

    # -- Mutations --

    def add_item(
        self,
        product: ProductInfo,
        quantity: int = 1,
        variant: Optional[Variant] = None,
        source: LineSource = LineSource.PLAIN,
        source_id: Optional[str] = None,
        unit_price: Optional[Decimal] = None,
        available: Optional[int] = None,
    ) -> CartLine:
        """Add `quantity` of `product`, merging with a matching line.

        `unit_price` overrides the variant/catalog price (sale and bundle
        lines). `available` overrides the catalog stock for pools that are
        not the catalog's own; backorders never apply to such pools.
        """
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        if not product.is_active:
            raise ProductUnavailable(
                f"{product.name} is not available",
                {"product_id": product.id, "status": product.status.value},
            )

        existing = self.find_line(product.id, variant, source, source_id)
        wanted = quantity + (existing.quantity if existing else 0)
        if available is None:
            stock = check_stock_availability(product.stock, wanted, product.backorder_allowed)
        else:
            stock = check_stock_availability(available, wanted)
        if not stock.passed:
            raise InsufficientStock(stock.message, {"product_id": product.id, **stock.details})

        if existing:
            existing.quantity = wanted
            line = existing
        else:
            if unit_price is not None:
                price = D(unit_price)
            elif variant is not None and variant.price is not None:
                price = variant.price
            else:
                price = product.price
            line = CartLine(
                product_id=product.id,
                quantity=quantity,
                unit_price=round_money(price),
                name=variant.name if variant and variant.name else product.name,
                sku=variant.sku if variant and variant.sku else product.sku,
                image=product.image,
                variant=variant,
                source=source,
                source_id=source_id,
            )
            self.lines.append(line)

        self.recompute()
        return line

    def update_quantity(self, line_id: str, quantity: int, available: Optional[int] = None,
                        backorder_allowed: bool = False) -> CartLine:
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        line = self.get_line(line_id)
        if available is not None:
            stock = check_stock_availability(available, quantity, backorder_allowed)
            if not stock.passed:
                raise InsufficientStock(stock.message, {"product_id": line.product_id, **stock.details})
        line.quantity = quantity
        self.recompute()
        return line

    def remove_item(self, line_id: str) -> None:
        line = self.get_line(line_id)
        self.lines.remove(line)
        self.recompute()

    def toggle_saved_for_later(self, line_id: str) -> CartLine:
        line = self.get_line(line_id)
        line.saved_for_later = not line.saved_for_later
        self.recompute()
        return line

    def move_to_cart(self, line_id: str) -> CartLine:
        line = self.get_line(line_id)
        line.saved_for_later = False
        self.recompute()
        return line

    def apply_coupon(self, coupon: Coupon) -> Decimal:
        """Attach `coupon`. Returns the resulting discount, which may be zero."""
        self.recompute()
        minimum = check_minimum_purchase(self.subtotal, coupon.minimum_purchase)
        if not minimum.passed:
            raise CouponNotEligible(minimum.message, {"code": coupon.code, **minimum.details})
        self.coupon = coupon
        self.recompute()
        return self.discount

    def remove_coupon(self) -> None:
        self.coupon = None
        self.recompute()

    def clear(self) -> None:
        """Empty the cart in place; the cart itself survives."""
        self.lines = []
        self.coupon = None
        self.recompute()

    def snapshot(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "lines": [line.to_dict() for line in self.lines],
            "coupon": self.coupon.to_dict() if self.coupon else None,
            "coupon_code": self.coupon.code if self.coupon else None,
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "total": str(self.total),
            "currency": self.currency,
            "item_count": sum(line.quantity for line in self.active_lines),
            "updated_at": self.updated_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Cart service
# ---------------------------------------------------------------------------

class CartService:
    """Per-user carts backed by the catalog and the promotion engines."""

    def __init__(
        self,
        catalog: Catalog,
        flash_sales: Optional["FlashSaleEngine"] = None,
        bundles: Optional["BundleEngine"] = None,
        config: Optional["StorefrontConfig"] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.catalog = catalog
        self.clock = clock or _utcnow
        self.flash_sales = flash_sales
        self.bundles = bundles
        self.config = config or default_config
        self._carts: dict[str, Cart] = {}
        self._lock = threading.Lock()

    def get_cart(self, user_id: str) -> Cart:
        with self._lock:
            cart = self._carts.get(user_id)
            if cart is None:
                cart = Cart(user_id=user_id, currency=self.config.pricing.currency, clock=self.clock)
                self._carts[user_id] = cart
            return cart

    async def add_item(self, user_id: str, product_id: str, quantity: int = 1,
                       variant: Optional[Variant] = None) -> Cart:
        product = await self.catalog.get_product(product_id)
        cart = self.get_cart(user_id)
        cart.add_item(product, quantity, variant)
        return cart

    async def add_flash_sale_item(self, user_id: str, sale_id: str, product_id: str,
                                  quantity: int = 1) -> Cart:
        """Add a sale item at its flash price. Stock is reserved at checkout."""
        if self.flash_sales is None:
            raise FlashSaleNotActive("Flash sales are not enabled", {"sale_id": sale_id})
        sale = self.flash_sales.get_sale(sale_id)
        pool = sale.get_product(product_id)
        if not self.flash_sales.is_sale_active(sale_id):
            raise FlashSaleNotActive(f"{sale.name} is not active", {"sale_id": sale_id})

        product = await self.catalog.get_product(product_id)
        cart = self.get_cart(user_id)
        cart.add_item(
            product,
            quantity,
            source=LineSource.FLASH_SALE,
            source_id=sale.id,
            unit_price=pool.flash_price,
            available=pool.stock,
        )
        return cart

    async def add_bundle(self, user_id: str, bundle_id: str, quantity: int = 1) -> Cart:
        """Add a bundle as a single line priced at the bundle price."""
        if self.bundles is None:
            raise NotFound(f"Bundle {bundle_id} not found", {"bundle_id": bundle_id})
        bundle_id = self.bundles.get_bundle(bundle_id).id
        cart = self.get_cart(user_id)
        existing = cart.find_line(bundle_id, None, LineSource.BUNDLE, bundle_id)
        bundle = self.bundles.validate_for_purchase(
            bundle_id, quantity + (existing.quantity if existing else 0)
        )
        cart.add_item(
            bundle.as_product(),
            quantity,
            source=LineSource.BUNDLE,
            source_id=bundle_id,
        )
        return cart

    async def update_quantity(self, user_id: str, line_id: str, quantity: int) -> Cart:
        cart = self.get_cart(user_id)
        line = cart.get_line(line_id)
        if line.source == LineSource.FLASH_SALE and self.flash_sales is not None:
            pool = self.flash_sales.get_sale(line.source_id).get_product(line.product_id)
            cart.update_quantity(line_id, quantity, available=pool.stock)
        elif line.source == LineSource.BUNDLE and self.bundles is not None:
            self.bundles.validate_for_purchase(line.source_id, quantity)
            cart.update_quantity(line_id, quantity)
        else:
            product = await self.catalog.get_product(line.product_id)
            cart.update_quantity(line_id, quantity, available=product.stock,
                                 backorder_allowed=product.backorder_allowed)
        return cart

    async def remove_item(self, user_id: str, line_id: str) -> Cart:
        cart = self.get_cart(user_id)
        cart.remove_item(line_id)
        return cart

    async def toggle_saved_for_later(self, user_id: str, line_id: str) -> Cart:
        cart = self.get_cart(user_id)
        cart.toggle_saved_for_later(line_id)
        return cart

    async def move_to_cart(self, user_id: str, line_id: str) -> Cart:
        cart = self.get_cart(user_id)
        cart.move_to_cart(line_id)
        return cart

    async def apply_coupon(self, user_id: str, coupon: Coupon) -> Cart:
        cart = self.get_cart(user_id)
        cart.apply_coupon(coupon)
        return cart

    async def remove_coupon(self, user_id: str) -> Cart:
        cart = self.get_cart(user_id)
        cart.remove_coupon()
        return cart

    async def clear(self, user_id: str) -> Cart:
        cart = self.get_cart(user_id)
        cart.clear()
        return cart

    def snapshot(self, user_id: str) -> CartSnapshot:
        return CartSnapshot.model_validate(self.get_cart(user_id).snapshot())
