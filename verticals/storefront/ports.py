"""Collaborator contracts the engine consumes.

The catalog, payment gateway and notifier live outside this service. Each
is a Protocol plus an in-memory implementation used in development and
tests. Identity is just the authenticated user id string handed in by the
routing layer.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from core.observability.logging_setup import log_event
from verticals.storefront.errors import InsufficientStock, NotFound
from verticals.storefront.money import D

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCONTINUED = "discontinued"


@dataclass(frozen=True)
class ProductInfo:
    """Catalog view of a product at one instant."""

    id: str
    name: str
    price: Decimal
    stock: int
    backorder_allowed: bool = False
    status: ProductStatus = ProductStatus.ACTIVE
    sku: Optional[str] = None
    image: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ProductStatus.ACTIVE


@runtime_checkable
class Catalog(Protocol):
    async def get_product(self, product_id: str) -> ProductInfo: ...

    async def decrement_stock(self, product_id: str, quantity: int) -> int: ...

    async def restore_stock(self, product_id: str, quantity: int) -> int: ...


class InMemoryCatalog:
    """Dict-backed catalog with an atomic stock decrement."""

    def __init__(self, products: Optional[list[ProductInfo]] = None):
        self._products: dict[str, ProductInfo] = {}
        self._lock = threading.Lock()
        for product in products or []:
            self.add(product)

    def add(self, product: ProductInfo) -> ProductInfo:
        product = replace(product, price=D(product.price))
        with self._lock:
            self._products[product.id] = product
        return product

    def set_price(self, product_id: str, price) -> ProductInfo:
        with self._lock:
            product = self._require(product_id)
            self._products[product_id] = replace(product, price=D(price))
            return self._products[product_id]

    def _require(self, product_id: str) -> ProductInfo:
        product = self._products.get(product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found", {"product_id": product_id})
        return product

    async def get_product(self, product_id: str) -> ProductInfo:
        with self._lock:
            return self._require(product_id)

    async def decrement_stock(self, product_id: str, quantity: int) -> int:
        with self._lock:
            product = self._require(product_id)
            if product.stock < quantity and not product.backorder_allowed:
                raise InsufficientStock(
                    f"Insufficient stock for {product.name}",
                    {"product_id": product_id, "available": product.stock, "requested": quantity},
                )
            self._products[product_id] = replace(product, stock=product.stock - quantity)
            return product.stock - quantity

    async def restore_stock(self, product_id: str, quantity: int) -> int:
        with self._lock:
            product = self._require(product_id)
            self._products[product_id] = replace(product, stock=product.stock + quantity)
            return product.stock + quantity


# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChargeResult:
    status: str  # "succeeded" | "failed"
    transaction_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class RefundResult:
    status: str  # "succeeded" | "failed"
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"


@runtime_checkable
class PaymentGateway(Protocol):
    async def charge(self, amount: Decimal, currency: str, customer_ref: str) -> ChargeResult: ...

    async def refund(self, transaction_ref: str, amount: Decimal, reason: str) -> RefundResult: ...


@dataclass
class InMemoryPaymentGateway:
    """Gateway that approves every charge and records calls."""

    charges: list[dict[str, Any]] = field(default_factory=list)
    refunds: list[dict[str, Any]] = field(default_factory=list)

    async def charge(self, amount: Decimal, currency: str, customer_ref: str) -> ChargeResult:
        ref = f"txn_{uuid.uuid4().hex[:16]}"
        self.charges.append({"amount": amount, "currency": currency, "customer_ref": customer_ref, "ref": ref})
        return ChargeResult(status="succeeded", transaction_ref=ref)

    async def refund(self, transaction_ref: str, amount: Decimal, reason: str) -> RefundResult:
        self.refunds.append({"transaction_ref": transaction_ref, "amount": amount, "reason": reason})
        return RefundResult(status="succeeded")


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------

@runtime_checkable
class Notifier(Protocol):
    async def send_order_confirmation(self, order: Any, user_id: str) -> None: ...

    async def send_price_drop_alert(self, user_id: str, product_id: str, old_price: Decimal, new_price: Decimal) -> None: ...


class LoggingNotifier:
    """Notifier that only writes log lines; stands in for the e-mail service."""

    async def send_order_confirmation(self, order: Any, user_id: str) -> None:
        log_event(logger, "info", "notify.order_confirmation",
                  user_id=user_id, order_number=getattr(order, "order_number", None))

    async def send_price_drop_alert(self, user_id: str, product_id: str, old_price: Decimal, new_price: Decimal) -> None:
        log_event(logger, "info", "notify.price_drop",
                  user_id=user_id, product_id=product_id,
                  old_price=str(old_price), new_price=str(new_price))
