"""Order lifecycle.

An order is a frozen pricing snapshot plus a status workflow:

    pending -> confirmed -> processing -> shipped -> delivered
    cancelled: from pending or confirmed only
    refunded:  from confirmed, processing, shipped, delivered, returned
    returned:  from delivered

Items and pricing never change after creation; only status, payment
status, tracking and the timeline move afterwards.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from patterns.workflow_states import WorkflowInstance, WorkflowTransition
from verticals.storefront.errors import InvalidStateTransition, NotFound
from verticals.storefront.models.schemas import OrderSnapshot
from verticals.storefront.money import D


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    RETURNED = "returned"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    UNKNOWN = "unknown"  # gateway timed out; reconciled later
    REFUNDED = "refunded"


ORDER_TRANSITIONS = {
    OrderStatus.PENDING: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED],
    OrderStatus.PROCESSING: [OrderStatus.SHIPPED, OrderStatus.REFUNDED],
    OrderStatus.SHIPPED: [OrderStatus.DELIVERED, OrderStatus.REFUNDED],
    OrderStatus.DELIVERED: [OrderStatus.RETURNED, OrderStatus.REFUNDED],
    OrderStatus.RETURNED: [OrderStatus.REFUNDED],
    OrderStatus.CANCELLED: [],
    OrderStatus.REFUNDED: [],
}

CANCELLABLE = (OrderStatus.PENDING, OrderStatus.CONFIRMED)

# Statuses that also stamp a dedicated timestamp field.
STAMPED_FIELDS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.REFUNDED: "refunded_at",
}


def _reject(current: OrderStatus, requested: OrderStatus, allowed: list[OrderStatus]) -> Exception:
    return InvalidStateTransition(
        f"Cannot move order from {current.value} to {requested.value}",
        {"from": current.value, "to": requested.value, "allowed": [s.value for s in allowed]},
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Snapshot parts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrderItem:
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal
    sku: Optional[str] = None
    image: Optional[str] = None
    variant: Optional[dict[str, Any]] = None
    source: str = "plain"
    source_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "image": self.image,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "line_total": str(self.line_total),
            "variant": self.variant,
            "source": self.source,
            "source_id": self.source_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        return cls(
            product_id=data["product_id"],
            name=data["name"],
            unit_price=D(data["unit_price"]),
            quantity=int(data["quantity"]),
            line_total=D(data["line_total"]),
            sku=data.get("sku"),
            image=data.get("image"),
            variant=data.get("variant"),
            source=data.get("source", "plain"),
            source_id=data.get("source_id"),
        )


@dataclass(frozen=True)
class OrderPricing:
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    coupon_discount: Decimal
    loyalty_discount: Decimal
    reward_discount: Decimal
    total_discount: Decimal
    total: Decimal
    currency: str = "USD"

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtotal": str(self.subtotal),
            "shipping": str(self.shipping),
            "tax": str(self.tax),
            "coupon_discount": str(self.coupon_discount),
            "loyalty_discount": str(self.loyalty_discount),
            "reward_discount": str(self.reward_discount),
            "total_discount": str(self.total_discount),
            "total": str(self.total),
            "currency": self.currency,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderPricing":
        return cls(
            currency=data.get("currency", "USD"),
            **{k: D(data[k]) for k in (
                "subtotal", "shipping", "tax", "coupon_discount", "loyalty_discount",
                "reward_discount", "total_discount", "total",
            )},
        )


@dataclass(frozen=True)
class Reservation:
    """Stock committed for an order, kept so it can be released."""

    kind: str  # "plain" | "flash_sale" | "bundle"
    product_id: str
    quantity: int
    source_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "product_id": self.product_id,
                "quantity": self.quantity, "source_id": self.source_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reservation":
        return cls(data["kind"], data["product_id"], int(data["quantity"]), data.get("source_id"))


# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------

def new_workflow(order_number: str, state: OrderStatus = OrderStatus.PENDING,
                 history: Optional[list[WorkflowTransition]] = None) -> WorkflowInstance[OrderStatus]:
    return WorkflowInstance(
        workflow_id=order_number,
        current_state=state,
        transitions=ORDER_TRANSITIONS,
        history=history or [],
        on_reject=_reject,
    )


@dataclass
class Order:
    order_number: str
    user_id: str
    items: tuple[OrderItem, ...]
    pricing: OrderPricing
    workflow: WorkflowInstance[OrderStatus]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    payment_status: PaymentStatus = PaymentStatus.PENDING
    transaction_ref: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    coupon: Optional[dict[str, Any]] = None
    reservations: tuple[Reservation, ...] = ()
    points_applied: int = 0
    redemption_code: Optional[str] = None
    points_multiplier: Decimal = Decimal("1")
    idempotency_key: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @property
    def status(self) -> OrderStatus:
        return self.workflow.current_state

    @property
    def timeline(self) -> list[WorkflowTransition]:
        return self.workflow.history

    @property
    def is_cancellable(self) -> bool:
        return self.status in CANCELLABLE

    def transition(self, to_status: OrderStatus, actor: str = "system", message: str = "",
                   at: Optional[datetime] = None) -> WorkflowTransition:
        """Move to `to_status`; raises InvalidStateTransition when not allowed."""
        at = at or datetime.now(timezone.utc)
        record = self.workflow.transition(OrderStatus(to_status), actor=actor, message=message, at=at)
        stamp = STAMPED_FIELDS.get(self.status)
        if stamp:
            setattr(self, stamp, at)
        self.updated_at = at
        return record

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "transaction_ref": self.transaction_ref,
            "tracking_number": self.tracking_number,
            "carrier": self.carrier,
            "items": [item.to_dict() for item in self.items],
            "pricing": self.pricing.to_dict(),
            "coupon": self.coupon,
            "reservations": [r.to_dict() for r in self.reservations],
            "points_applied": self.points_applied,
            "redemption_code": self.redemption_code,
            "points_multiplier": str(self.points_multiplier),
            "idempotency_key": self.idempotency_key,
            "cancellation_reason": self.cancellation_reason,
            "timeline": [t.to_dict() for t in self.timeline],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "confirmed_at": _iso(self.confirmed_at),
            "shipped_at": _iso(self.shipped_at),
            "delivered_at": _iso(self.delivered_at),
            "cancelled_at": _iso(self.cancelled_at),
            "refunded_at": _iso(self.refunded_at),
        }

    def snapshot(self) -> OrderSnapshot:
        """Client-facing view; drops reservations and idempotency bookkeeping."""
        return OrderSnapshot.model_validate(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        history = [
            WorkflowTransition(
                from_state=t["from_state"],
                to_state=t["to_state"],
                timestamp=datetime.fromisoformat(t["timestamp"]),
                actor=t.get("actor", "system"),
                message=t.get("message", ""),
                metadata=t.get("metadata", {}),
            )
            for t in data.get("timeline", [])
        ]
        return cls(
            id=data["id"],
            order_number=data["order_number"],
            user_id=data["user_id"],
            items=tuple(OrderItem.from_dict(i) for i in data["items"]),
            pricing=OrderPricing.from_dict(data["pricing"]),
            workflow=new_workflow(data["order_number"], OrderStatus(data["status"]), history),
            payment_status=PaymentStatus(data.get("payment_status", "pending")),
            transaction_ref=data.get("transaction_ref"),
            tracking_number=data.get("tracking_number"),
            carrier=data.get("carrier"),
            coupon=data.get("coupon"),
            reservations=tuple(Reservation.from_dict(r) for r in data.get("reservations", [])),
            points_applied=int(data.get("points_applied", 0)),
            redemption_code=data.get("redemption_code"),
            points_multiplier=D(data.get("points_multiplier", "1")),
            idempotency_key=data.get("idempotency_key"),
            cancellation_reason=data.get("cancellation_reason"),
            created_at=_parse(data.get("created_at")),
            updated_at=_parse(data.get("updated_at")),
            confirmed_at=_parse(data.get("confirmed_at")),
            shipped_at=_parse(data.get("shipped_at")),
            delivered_at=_parse(data.get("delivered_at")),
            cancelled_at=_parse(data.get("cancelled_at")),
            refunded_at=_parse(data.get("refunded_at")),
        )


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@runtime_checkable
class OrderStore(Protocol):
    async def save(self, order: Order) -> Order: ...

    async def get(self, order_id: str) -> Order: ...

    async def get_by_number(self, order_number: str) -> Optional[Order]: ...

    async def list_for_user(self, user_id: str) -> list[Order]: ...

    async def list_pending_before(self, cutoff: datetime) -> list[Order]: ...


class InMemoryOrderStore:
    """Keeps serialised snapshots, so reads never alias live objects."""

    def __init__(self):
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    async def save(self, order: Order) -> Order:
        with self._lock:
            self._rows[order.id] = order.to_dict()
        return order

    async def get(self, order_id: str) -> Order:
        row = self._rows.get(order_id)
        if row is None:
            raise NotFound(f"Order {order_id} not found", {"order_id": order_id})
        return Order.from_dict(row)

    async def get_by_number(self, order_number: str) -> Optional[Order]:
        for row in list(self._rows.values()):
            if row["order_number"] == order_number:
                return Order.from_dict(row)
        return None

    async def list_for_user(self, user_id: str) -> list[Order]:
        orders = [Order.from_dict(r) for r in list(self._rows.values()) if r["user_id"] == user_id]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def list_pending_before(self, cutoff: datetime) -> list[Order]:
        return [
            Order.from_dict(r) for r in list(self._rows.values())
            if r["status"] == OrderStatus.PENDING.value and datetime.fromisoformat(r["created_at"]) < cutoff
        ]
