"""Shared fixtures: a frozen clock, a small catalog and wired-up engines."""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from patterns.domain_config import StorefrontConfig
from verticals.storefront.bundles import BundleEngine
from verticals.storefront.cart import CartService
from verticals.storefront.checkout import OrderAssembly
from verticals.storefront.flash_sales import FlashSaleEngine
from verticals.storefront.loyalty import LoyaltyLedger
from verticals.storefront.orders import InMemoryOrderStore, Order, OrderItem, OrderPricing, new_workflow
from verticals.storefront.ports import ChargeResult, InMemoryCatalog, InMemoryPaymentGateway, ProductInfo

START = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class SlowGateway(InMemoryPaymentGateway):
    delay: float = 1.0

    async def charge(self, amount, currency, customer_ref):
        await asyncio.sleep(self.delay)
        return await super().charge(amount, currency, customer_ref)


class DecliningGateway(InMemoryPaymentGateway):
    async def charge(self, amount, currency, customer_ref):
        return ChargeResult(status="failed", error="card_declined")


class RecordingNotifier:
    def __init__(self):
        self.confirmations = []
        self.price_drops = []

    async def send_order_confirmation(self, order, user_id):
        self.confirmations.append((order.order_number, user_id))

    async def send_price_drop_alert(self, user_id, product_id, old_price, new_price):
        self.price_drops.append((user_id, product_id, old_price, new_price))


class FailingNotifier(RecordingNotifier):
    async def send_order_confirmation(self, order, user_id):
        raise RuntimeError("smtp unavailable")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return StorefrontConfig.default()


@pytest.fixture
def catalog():
    return InMemoryCatalog([
        ProductInfo("p1", "Wireless Mouse", Decimal("20.00"), stock=10, sku="MOUSE-1"),
        ProductInfo("p2", "USB Hub", Decimal("15.00"), stock=5),
        ProductInfo("p3", "Mechanical Keyboard", Decimal("60.00"), stock=3),
        ProductInfo("p4", "Laptop Stand", Decimal("40.00"), stock=2),
    ])


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def flash_sales(catalog, clock, config, notifier):
    return FlashSaleEngine(catalog, clock=clock, config=config, notifier=notifier)


@pytest.fixture
def bundles(catalog, clock, config):
    return BundleEngine(catalog, clock=clock, config=config)


@pytest.fixture
def loyalty(clock, config):
    return LoyaltyLedger(config=config, clock=clock)


@pytest.fixture
def carts(catalog, flash_sales, bundles, config, clock):
    return CartService(catalog, flash_sales=flash_sales, bundles=bundles, config=config, clock=clock)


@pytest.fixture
def gateway():
    return InMemoryPaymentGateway()


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def make_assembly(carts, catalog, flash_sales, bundles, loyalty, gateway, store, notifier, config, clock):
    """Build an OrderAssembly over the shared engines; keyword args override."""
    def build(**overrides) -> OrderAssembly:
        parts = dict(
            carts=carts, catalog=catalog, flash_sales=flash_sales, bundles=bundles, loyalty=loyalty,
            payments=gateway, store=store, notifier=notifier, config=config, clock=clock,
        )
        parts.update(overrides)
        return OrderAssembly(**parts)
    return build


@pytest.fixture
def assembly(make_assembly):
    return make_assembly()


@pytest.fixture
def make_order():
    def build(order_number="ORD-2610-000001", user_id="u1", created_at=START, total="49.50") -> Order:
        return Order(
            order_number=order_number,
            user_id=user_id,
            items=(OrderItem("p1", "Wireless Mouse", Decimal("20.00"), 2, Decimal("40.00")),),
            pricing=OrderPricing(
                subtotal=Decimal("40.00"), shipping=Decimal("9.50"), tax=Decimal("0.00"),
                coupon_discount=Decimal("0.00"), loyalty_discount=Decimal("0.00"),
                reward_discount=Decimal("0.00"), total_discount=Decimal("0.00"), total=Decimal(total),
            ),
            workflow=new_workflow(order_number),
            created_at=created_at,
            updated_at=created_at,
        )
    return build



@pytest.fixture
def slow_gateway():
    return SlowGateway(delay=1.0)


@pytest.fixture
def declining_gateway():
    return DecliningGateway()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()
