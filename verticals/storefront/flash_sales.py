"""Flash sale engine.

A flash sale is a time-boxed set of discounted stock pools, one per
product. Status is derived from the clock and the pools on every touch:

    now < start               -> scheduled
    start <= now <= end       -> active, or sold_out when every pool is empty
    now > end                 -> ended (terminal)

An operator may pause, resume or force-end a sale. The override is kept as
a tagged record together with the window it was set in; once the clock
moves past that window the derived status takes over again.

Each pool carries a version. Reservations read the pool, validate, then
compare-and-swap against the version they read, so check-and-decrement is
one indivisible step. A lost race raises `ReservationConflict`, which is
retried with backoff and surfaces as `InsufficientStock` when retries run
out.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterator, NamedTuple, Optional
from zoneinfo import ZoneInfo

from core.observability.logging_setup import log_event
from core.resilience.retry import retry_with_backoff
from patterns.domain_config import StorefrontConfig
from patterns.rules_engine import check_allowance, check_stock_availability
from patterns.workflow_states import WorkflowTransition, allowed_targets, can_transition
from verticals.storefront.config import config as default_config
from verticals.storefront.errors import (
    FlashSaleNotActive,
    InsufficientStock,
    InvalidFlashPrice,
    InvalidStateTransition,
    NotFound,
    PerCustomerLimitExceeded,
    ReservationConflict,
)
from verticals.storefront.models.schemas import FlashSaleProductInput, FlashSaleStatusPayload
from verticals.storefront.money import HUNDRED, ZERO, percentage_of, round_money, round_percent
from verticals.storefront.ports import Catalog, Notifier
from verticals.storefront.slugs import slugify, unique_slug

logger = logging.getLogger(__name__)


class FlashSaleStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"
    SOLD_OUT = "sold_out"


# Moves an operator may make, keyed by the sale's effective status.
OVERRIDE_TRANSITIONS = {
    FlashSaleStatus.SCHEDULED: [FlashSaleStatus.ENDED],
    FlashSaleStatus.ACTIVE: [FlashSaleStatus.PAUSED, FlashSaleStatus.ENDED],
    FlashSaleStatus.PAUSED: [FlashSaleStatus.ACTIVE, FlashSaleStatus.ENDED],
    FlashSaleStatus.SOLD_OUT: [FlashSaleStatus.ENDED],
    FlashSaleStatus.ENDED: [],
}


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimeSlot:
    start: time
    end: time

    @classmethod
    def parse(cls, start: str, end: str) -> "TimeSlot":
        """Build from "HH:MM" strings."""
        return cls(time.fromisoformat(start), time.fromisoformat(end))


@dataclass(frozen=True)
class Recurrence:
    """Daily or weekly time slots inside the schedule's overall range.

    `days_of_week` follows `date.weekday()`: Monday is 0, Sunday is 6.
    """

    frequency: str = "daily"
    days_of_week: tuple[int, ...] = ()
    time_slots: tuple[TimeSlot, ...] = ()

    def __post_init__(self):
        if self.frequency not in ("daily", "weekly"):
            raise ValueError(f"Unsupported recurrence frequency: {self.frequency}")

    def runs_on(self, day: date) -> bool:
        if self.frequency == "weekly" and self.days_of_week:
            return day.weekday() in self.days_of_week
        return True


class Window(NamedTuple):
    phase: str  # "upcoming" | "active" | "ended"
    start: Optional[datetime]
    end: Optional[datetime]


@dataclass
class Schedule:
    start: datetime
    end: datetime
    timezone: str = "UTC"
    recurrence: Optional[Recurrence] = None

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError("Flash sale must end after it starts")

    def _slot_windows(self, around: datetime) -> Iterator[tuple[datetime, datetime]]:
        tz = ZoneInfo(self.timezone)
        local_day = around.astimezone(tz).date()
        for offset in range(-1, 9):
            day = local_day + timedelta(days=offset)
            if not self.recurrence.runs_on(day):
                continue
            for slot in self.recurrence.time_slots:
                ws = datetime.combine(day, slot.start, tzinfo=tz)
                we = datetime.combine(day, slot.end, tzinfo=tz)
                if we <= ws:
                    we += timedelta(days=1)
                ws, we = max(ws, self.start), min(we, self.end)
                if ws < we:
                    yield ws, we

    def window_at(self, now: datetime) -> Window:
        """The window `now` falls in, or the next one coming up."""
        if now > self.end:
            return Window("ended", None, None)
        if self.recurrence is None or not self.recurrence.time_slots:
            if now < self.start:
                return Window("upcoming", self.start, self.end)
            return Window("active", self.start, self.end)

        upcoming = None
        for ws, we in self._slot_windows(max(now, self.start)):
            if ws <= now <= we:
                return Window("active", ws, we)
            if ws > now and (upcoming is None or ws < upcoming[0]):
                upcoming = (ws, we)
        if upcoming is not None:
            return Window("upcoming", *upcoming)
        return Window("ended", None, None)

    def to_dict(self) -> dict[str, Any]:
        recurrence = None
        if self.recurrence is not None:
            recurrence = {
                "frequency": self.recurrence.frequency,
                "days_of_week": list(self.recurrence.days_of_week),
                "time_slots": [
                    {"start": s.start.strftime("%H:%M"), "end": s.end.strftime("%H:%M")}
                    for s in self.recurrence.time_slots
                ],
            }
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "timezone": self.timezone,
            "recurrence": recurrence,
        }


# ---------------------------------------------------------------------------
# Sale and pools
# ---------------------------------------------------------------------------

@dataclass
class FlashSaleProduct:
    """One product's discounted stock pool inside a sale."""

    product_id: str
    flash_price: Decimal
    original_price: Decimal
    discount_percentage: int
    stock: int
    max_per_customer: int = 1  # 0 = unlimited
    sold_count: int = 0
    name: str = ""
    image: Optional[str] = None
    customer_reserved: dict[str, int] = field(default_factory=dict)
    version: int = 0

    @property
    def initial_stock(self) -> int:
        return self.stock + self.sold_count

    @property
    def stock_percentage(self) -> int:
        """Share of the pool already sold, as a whole percentage."""
        return percentage_of(self.sold_count, self.initial_stock)

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "image": self.image,
            "flash_price": str(self.flash_price),
            "original_price": str(self.original_price),
            "discount_percentage": self.discount_percentage,
            "stock": self.stock,
            "sold_count": self.sold_count,
            "max_per_customer": self.max_per_customer,
            "stock_percentage": self.stock_percentage,
        }


@dataclass(frozen=True)
class ManualOverride:
    """Operator-set status, honoured until `window_end` has passed."""

    status: FlashSaleStatus
    window_end: datetime
    set_at: datetime
    actor: str = "admin"

    def applies_at(self, now: datetime) -> bool:
        return now <= self.window_end


@dataclass
class FlashSale:
    id: str
    name: str
    slug: str
    products: list[FlashSaleProduct]
    schedule: Schedule
    status: FlashSaleStatus = FlashSaleStatus.SCHEDULED
    override: Optional[ManualOverride] = None
    description: str = ""
    display: dict[str, Any] = field(default_factory=dict)
    view_count: int = 0
    unique_visitors: set[str] = field(default_factory=set)
    override_history: list[WorkflowTransition] = field(default_factory=list)

    def get_product(self, product_id: str) -> FlashSaleProduct:
        for pool in self.products:
            if pool.product_id == product_id:
                return pool
        raise NotFound(
            f"Product {product_id} is not part of {self.name}",
            {"sale_id": self.id, "product_id": product_id},
        )

    @property
    def all_sold_out(self) -> bool:
        return all(pool.stock <= 0 for pool in self.products)

    @property
    def total_progress(self) -> int:
        total = sum(pool.initial_stock for pool in self.products)
        sold = sum(pool.sold_count for pool in self.products)
        return percentage_of(sold, total)

    def derived_status(self, now: datetime) -> FlashSaleStatus:
        phase = self.schedule.window_at(now).phase
        if phase == "upcoming":
            return FlashSaleStatus.SCHEDULED
        if phase == "ended":
            return FlashSaleStatus.ENDED
        if self.all_sold_out:
            return FlashSaleStatus.SOLD_OUT
        return FlashSaleStatus.ACTIVE

    def effective_status(self, now: datetime) -> FlashSaleStatus:
        if self.override is not None and self.override.applies_at(now):
            return self.override.status
        return self.derived_status(now)

    def to_dict(self, now: datetime) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "status": self.effective_status(now).value,
            "schedule": self.schedule.to_dict(),
            "products": [pool.to_dict() for pool in self.products],
            "display": dict(self.display),
            "traffic": {"view_count": self.view_count, "unique_visitors": len(self.unique_visitors)},
            "total_progress": self.total_progress,
            "override": None if self.override is None else {
                "status": self.override.status.value,
                "window_end": self.override.window_end.isoformat(),
                "set_at": self.override.set_at.isoformat(),
                "actor": self.override.actor,
            },
        }


def time_breakdown(milliseconds: int) -> dict[str, int]:
    seconds = max(milliseconds, 0) // 1000
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    return {"days": days, "hours": hours, "minutes": minutes, "seconds": seconds}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class FlashSaleEngine:
    """Owns flash sales and is the only writer of their stock pools.

    Usage::

        engine = FlashSaleEngine(catalog)
        sale = await engine.create_sale(
            "Midnight deals",
            [{"product_id": "p1", "flash_price": "19.99", "stock": 5}],
            start=now, end=now + timedelta(hours=2),
        )
        remaining = await engine.reserve_stock(sale.id, "p1", 2, customer_id="u1")
    """

    def __init__(
        self,
        catalog: Catalog,
        clock: Optional[Callable[[], datetime]] = None,
        config: Optional[StorefrontConfig] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.catalog = catalog
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.config = config or default_config
        self.notifier = notifier
        self._sales: dict[str, FlashSale] = {}
        self._watchers: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    # -- Creation --

    async def create_sale(
        self,
        name: str,
        products: list,
        start: datetime,
        end: datetime,
        *,
        slug: Optional[str] = None,
        description: str = "",
        timezone_name: str = "UTC",
        recurrence: Optional[Recurrence] = None,
        display: Optional[dict[str, Any]] = None,
    ) -> FlashSale:
        """Create a sale. Original prices come from the catalog.

        `products` holds `FlashSaleProductInput` models or plain dicts with
        the same fields.
        """
        defaults = self.config.flash_sales
        pools: list[FlashSaleProduct] = []
        for entry in products:
            line_input = (
                entry if isinstance(entry, FlashSaleProductInput) else FlashSaleProductInput.model_validate(entry)
            )
            product = await self.catalog.get_product(line_input.product_id)
            original = round_money(product.price)
            flash = round_money(line_input.flash_price)
            if flash <= ZERO or flash >= original:
                raise InvalidFlashPrice(
                    f"Flash price {flash} must be positive and below {original} for {product.name}",
                    {"product_id": product.id, "flash_price": str(flash), "original_price": str(original)},
                )
            pools.append(FlashSaleProduct(
                product_id=product.id,
                flash_price=flash,
                original_price=original,
                discount_percentage=round_percent((original - flash) / original * HUNDRED),
                stock=defaults.default_stock if line_input.stock is None else line_input.stock,
                max_per_customer=(
                    defaults.default_max_per_customer if line_input.max_per_customer is None else line_input.max_per_customer
                ),
                name=product.name,
                image=product.image,
            ))

        sale = FlashSale(
            id=uuid.uuid4().hex,
            name=name,
            slug=slug or slugify(name),
            products=pools,
            schedule=Schedule(start, end, timezone_name, recurrence),
            description=description,
            display=dict(display or {}),
        )
        with self._lock:
            sale.slug = unique_slug(sale.slug, {s.slug for s in self._sales.values()})
            self._sales[sale.id] = sale
            self._refresh(sale, self.clock())

        log_event(logger, "info", "flash_sale.created", sale_id=sale.id,
                  products=len(pools), status=sale.status.value)
        await self._alert_watchers(sale)
        return sale

    def watch(self, user_id: str, product_id: str) -> None:
        """Register `user_id` for a price-drop alert on `product_id`."""
        with self._lock:
            self._watchers.setdefault(product_id, set()).add(user_id)

    async def _alert_watchers(self, sale: FlashSale) -> None:
        if self.notifier is None:
            return
        for pool in sale.products:
            for user_id in sorted(self._watchers.get(pool.product_id, ())):
                try:
                    await self.notifier.send_price_drop_alert(
                        user_id, pool.product_id, pool.original_price, pool.flash_price
                    )
                except Exception:
                    logger.exception("price drop alert failed for %s", user_id)

    # -- Lookup and status --

    def get_sale(self, sale_id: str) -> FlashSale:
        """Look a sale up by id or slug."""
        sale = self._sales.get(sale_id)
        if sale is None:
            sale = next((s for s in list(self._sales.values()) if s.slug == sale_id), None)
        if sale is None:
            raise NotFound(f"Flash sale {sale_id} not found", {"sale_id": sale_id})
        return sale

    def _refresh(self, sale: FlashSale, now: datetime) -> FlashSaleStatus:
        """Re-evaluate status. Caller holds the lock."""
        if sale.override is not None and not sale.override.applies_at(now):
            log_event(logger, "info", "flash_sale.override_lapsed", sale_id=sale.id,
                      override=sale.override.status.value)
            sale.override = None
        sale.status = sale.effective_status(now)
        return sale.status

    def status(self, sale_id: str) -> FlashSaleStatus:
        with self._lock:
            return self._refresh(self.get_sale(sale_id), self.clock())

    def is_sale_active(self, sale_id: str) -> bool:
        return self.status(sale_id) == FlashSaleStatus.ACTIVE

    def is_product_available(self, sale_id: str, product_id: str, quantity: int = 1) -> bool:
        sale = self.get_sale(sale_id)
        if self.status(sale_id) != FlashSaleStatus.ACTIVE:
            return False
        try:
            pool = sale.get_product(product_id)
        except NotFound:
            return False
        return pool.stock >= quantity

    def list_active(self) -> list[FlashSale]:
        with self._lock:
            now = self.clock()
            return [s for s in self._sales.values() if self._refresh(s, now) == FlashSaleStatus.ACTIVE]

    def list_upcoming(self) -> list[FlashSale]:
        with self._lock:
            now = self.clock()
            upcoming = [s for s in self._sales.values() if self._refresh(s, now) == FlashSaleStatus.SCHEDULED]
        return sorted(upcoming, key=lambda s: s.schedule.window_at(now).start or s.schedule.start)

    # -- Reservation --

    async def reserve_stock(self, sale_id: str, product_id: str, quantity: int, customer_id: str) -> int:
        """Atomically move `quantity` units from stock to sold. Returns remaining stock."""
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        fs = self.config.flash_sales
        try:
            remaining = await retry_with_backoff(
                self._try_reserve, sale_id, product_id, quantity, customer_id,
                retry_on=(ReservationConflict,),
                max_retries=fs.reservation_max_retries,
                backoff_base=fs.reservation_backoff_base,
                backoff_max=fs.reservation_backoff_max,
            )
        except ReservationConflict as exc:
            log_event(logger, "warning", "flash_sale.reserve_contended",
                      sale_id=sale_id, product_id=product_id, qty=quantity)
            raise InsufficientStock("Stock is in high demand, please retry",
                                    {"sale_id": sale_id, "product_id": product_id, **exc.details}) from exc

        log_event(logger, "info", "flash_sale.reserved", sale_id=sale_id, product_id=product_id,
                  customer_id=customer_id, qty=quantity, remaining=remaining)
        return remaining

    def _try_reserve(self, sale_id: str, product_id: str, quantity: int, customer_id: str) -> int:
        sale = self.get_sale(sale_id)
        status = self.status(sale_id)
        # Sold out means every pool is empty; the stock check below reports it.
        if status not in (FlashSaleStatus.ACTIVE, FlashSaleStatus.SOLD_OUT):
            raise FlashSaleNotActive(
                f"{sale.name} is {status.value}",
                {"sale_id": sale_id, "status": status.value},
            )

        pool = sale.get_product(product_id)
        expected_version = pool.version
        reserved = pool.customer_reserved.get(customer_id, 0)

        stock = check_stock_availability(pool.stock, quantity)
        if not stock.passed:
            raise InsufficientStock(stock.message, {"sale_id": sale_id, "product_id": product_id, **stock.details})
        cap = check_allowance(pool.max_per_customer, reserved, quantity, rule_name="max_per_customer")
        if not cap.passed:
            raise PerCustomerLimitExceeded(
                f"Limit of {pool.max_per_customer} per customer for {pool.name or product_id}",
                {"sale_id": sale_id, "product_id": product_id, **cap.details},
            )

        def take(p: FlashSaleProduct) -> None:
            p.stock -= quantity
            p.sold_count += quantity
            p.customer_reserved[customer_id] = reserved + quantity

        return self._compare_and_swap(sale, product_id, expected_version, take).stock

    async def release_stock(self, sale_id: str, product_id: str, quantity: int,
                            customer_id: Optional[str] = None) -> int:
        """Return `quantity` units from sold to stock. Returns remaining stock.

        A sale that was sold out only because its pools ran dry becomes
        active again; manual overrides are left alone.
        """
        with self._lock:
            sale = self.get_sale(sale_id)
            pool = sale.get_product(product_id)
            quantity = min(quantity, pool.sold_count)
            pool.stock += quantity
            pool.sold_count -= quantity
            if customer_id is not None and customer_id in pool.customer_reserved:
                left = pool.customer_reserved[customer_id] - quantity
                if left > 0:
                    pool.customer_reserved[customer_id] = left
                else:
                    del pool.customer_reserved[customer_id]
            pool.version += 1
            status = self._refresh(sale, self.clock())
            remaining = pool.stock

        log_event(logger, "info", "flash_sale.released", sale_id=sale_id, product_id=product_id,
                  customer_id=customer_id, qty=quantity, remaining=remaining, status=status.value)
        return remaining

    def _compare_and_swap(self, sale: FlashSale, product_id: str, expected_version: int,
                          mutate: Callable[[FlashSaleProduct], None]) -> FlashSaleProduct:
        with self._lock:
            pool = sale.get_product(product_id)
            if pool.version != expected_version:
                raise ReservationConflict(
                    "Stock pool changed concurrently",
                    {"expected_version": expected_version, "version": pool.version},
                )
            mutate(pool)
            pool.version += 1
            status = self._refresh(sale, self.clock())
        if status == FlashSaleStatus.SOLD_OUT:
            log_event(logger, "info", "flash_sale.sold_out", sale_id=sale.id)
        return pool

    # -- Manual overrides --

    def _override(self, sale_id: str, target: FlashSaleStatus, actor: str, reason: str) -> FlashSale:
        with self._lock:
            sale = self.get_sale(sale_id)
            now = self.clock()
            current = self._refresh(sale, now)
            if not can_transition(OVERRIDE_TRANSITIONS, current, target):
                allowed = [s.value for s in allowed_targets(OVERRIDE_TRANSITIONS, current)]
                raise InvalidStateTransition(
                    f"Cannot move flash sale from {current.value} to {target.value}",
                    {"sale_id": sale_id, "from": current.value, "to": target.value, "allowed": allowed},
                )

            if target == FlashSaleStatus.ACTIVE:
                sale.override = None
            else:
                window = sale.schedule.window_at(now)
                window_end = sale.schedule.end if target == FlashSaleStatus.ENDED else window.end
                sale.override = ManualOverride(target, window_end or sale.schedule.end, now, actor)
            sale.override_history.append(WorkflowTransition(
                from_state=current.value, to_state=target.value, timestamp=now, actor=actor, message=reason,
            ))
            self._refresh(sale, now)

        log_event(logger, "info", "flash_sale.override", sale_id=sale_id,
                  from_status=current.value, to_status=sale.status.value, actor=actor)
        return sale

    def pause(self, sale_id: str, actor: str = "admin", reason: str = "") -> FlashSale:
        return self._override(sale_id, FlashSaleStatus.PAUSED, actor, reason)

    def resume(self, sale_id: str, actor: str = "admin", reason: str = "") -> FlashSale:
        return self._override(sale_id, FlashSaleStatus.ACTIVE, actor, reason)

    def force_end(self, sale_id: str, actor: str = "admin", reason: str = "") -> FlashSale:
        return self._override(sale_id, FlashSaleStatus.ENDED, actor, reason)

    def reschedule(self, sale_id: str, start: datetime, end: datetime,
                   recurrence: Optional[Recurrence] = None) -> FlashSale:
        """Move the sale to a new window. Any manual override is dropped."""
        with self._lock:
            sale = self.get_sale(sale_id)
            sale.schedule = Schedule(start, end, sale.schedule.timezone, recurrence or sale.schedule.recurrence)
            sale.override = None
            status = self._refresh(sale, self.clock())
        log_event(logger, "info", "flash_sale.rescheduled", sale_id=sale_id, status=status.value)
        return sale

    # -- Read models --

    def time_remaining(self, sale_id: str) -> dict[str, Any]:
        sale = self.get_sale(sale_id)
        now = self.clock()
        window = sale.schedule.window_at(now)
        if window.phase == "upcoming":
            ms = int((window.start - now) / timedelta(milliseconds=1))
        elif window.phase == "active":
            ms = int((window.end - now) / timedelta(milliseconds=1))
        else:
            ms = 0
        return {"type": window.phase, "milliseconds": ms, **time_breakdown(ms)}

    def status_payload(self, sale_id: str) -> FlashSaleStatusPayload:
        sale = self.get_sale(sale_id)
        return FlashSaleStatusPayload.model_validate({
            "sale_id": sale.id,
            "status": self.status(sale_id).value,
            "time_remaining": self.time_remaining(sale_id),
            "products": [
                {
                    "product_id": pool.product_id,
                    "stock": pool.stock,
                    "sold_count": pool.sold_count,
                    "stock_percentage": pool.stock_percentage,
                }
                for pool in sale.products
            ],
            "total_progress": sale.total_progress,
        })

    def record_view(self, sale_id: str, visitor_id: Optional[str] = None) -> int:
        with self._lock:
            sale = self.get_sale(sale_id)
            sale.view_count += 1
            if visitor_id:
                sale.unique_visitors.add(visitor_id)
            return sale.view_count
