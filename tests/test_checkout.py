"""Test order assembly: pricing, rollback, idempotency, payment and cancellation."""
import asyncio
import re
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from core.resilience import generate_idempotency_key
from verticals.storefront.cart import Coupon
from verticals.storefront.errors import (
    CheckoutInProgress,
    EmptyCart,
    InsufficientStock,
    InvalidStateTransition,
    PaymentFailed,
    RedemptionUnavailable,
)
from verticals.storefront.loyalty import RedemptionStatus, Reward, RewardType
from verticals.storefront.models.schemas import CheckoutRequest
from verticals.storefront.orders import InMemoryOrderStore, OrderStatus, PaymentStatus
from verticals.storefront.ports import InMemoryPaymentGateway


async def _fill_cart(carts, coupon=True):
    await carts.add_item("u1", "p1", 2)
    await carts.add_item("u1", "p2", 1)
    if coupon:
        await carts.apply_coupon("u1", Coupon.percentage("SAVE10", 10, minimum_purchase=40))


async def _stock(catalog, product_id):
    return (await catalog.get_product(product_id)).stock


def _with_pricing(config, **fields):
    return replace(config, pricing=replace(config.pricing, **fields))


def _with_checkout(config, **fields):
    return replace(config, checkout=replace(config.checkout, **fields))


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_checkout_creates_pending_order(assembly, carts, catalog, notifier):
    await _fill_cart(carts)
    order = await assembly.checkout("u1")

    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert re.fullmatch(r"ORD-2610-\d{6}", order.order_number)
    assert order.pricing.subtotal == Decimal("55.00")
    assert order.pricing.coupon_discount == Decimal("5.50")
    assert order.pricing.total == Decimal("49.50")
    assert order.coupon["code"] == "SAVE10"
    assert order.timeline[0].message == "Order placed"

    assert await _stock(catalog, "p1") == 8
    assert await _stock(catalog, "p2") == 4
    cart = carts.get_cart("u1")
    assert cart.is_empty
    assert cart.coupon is None

    await assembly.drain_notifications()
    assert notifier.confirmations == [(order.order_number, "u1")]


@pytest.mark.asyncio
async def test_saved_lines_are_not_ordered(assembly, carts):
    await _fill_cart(carts, coupon=False)
    cart = carts.get_cart("u1")
    await carts.toggle_saved_for_later("u1", cart.find_line("p2").id)

    order = await assembly.checkout("u1")
    assert [item.product_id for item in order.items] == ["p1"]
    assert cart.lines == []


@pytest.mark.asyncio
async def test_shipping_and_tax(make_assembly, carts, config):
    assembly = make_assembly(config=_with_pricing(
        config, tax_rate=Decimal("10"), shipping_flat_rate=Decimal("5"), free_shipping_threshold=Decimal("100"),
    ))
    await _fill_cart(carts)
    pricing = (await assembly.checkout("u1")).pricing
    assert pricing.shipping == Decimal("5.00")
    assert pricing.tax == Decimal("4.95")
    assert pricing.total == Decimal("59.45")


@pytest.mark.asyncio
async def test_free_shipping_over_threshold(make_assembly, carts, config):
    assembly = make_assembly(config=_with_pricing(
        config, tax_rate=Decimal("10"), shipping_flat_rate=Decimal("5"), free_shipping_threshold=Decimal("100"),
    ))
    await carts.add_item("u1", "p3", 2)
    pricing = (await assembly.checkout("u1")).pricing
    assert pricing.shipping == Decimal("0")
    assert pricing.tax == Decimal("12.00")
    assert pricing.total == Decimal("132.00")


@pytest.mark.asyncio
async def test_points_applied_at_checkout(assembly, carts, loyalty):
    loyalty.award_bonus("u1", "custom", points=1000)
    await _fill_cart(carts)
    order = await assembly.checkout("u1", CheckoutRequest(points_to_apply=500))
    assert order.pricing.loyalty_discount == Decimal("5.00")
    assert order.pricing.total == Decimal("44.50")
    assert order.points_applied == 500
    assert loyalty.get_account("u1").available_points == 500


@pytest.mark.asyncio
async def test_empty_cart(assembly):
    with pytest.raises(EmptyCart):
        await assembly.checkout("u1")


@pytest.mark.asyncio
async def test_failed_reservation_rolls_back_earlier_lines(assembly, carts, catalog, flash_sales, clock, store):
    sale = await flash_sales.create_sale(
        "Hub rush", [{"product_id": "p2", "flash_price": "10.00", "stock": 3, "max_per_customer": 0}],
        start=clock(), end=clock() + timedelta(hours=1),
    )
    await carts.add_flash_sale_item("u1", sale.id, "p2", 2)
    await carts.add_item("u1", "p4", 2)
    await catalog.decrement_stock("p4", 1)

    with pytest.raises(InsufficientStock):
        await assembly.checkout("u1")

    pool = sale.get_product("p2")
    assert (pool.stock, pool.sold_count) == (3, 0)
    assert await _stock(catalog, "p4") == 1
    assert len(carts.get_cart("u1").lines) == 2
    assert await store.list_for_user("u1") == []


@pytest.mark.asyncio
async def test_persist_failure_undoes_every_step(make_assembly, carts, catalog, loyalty):
    class BrokenStore(InMemoryOrderStore):
        async def save(self, order):
            raise RuntimeError("database unavailable")

    reward = loyalty.add_reward(Reward(name="$10 off", type=RewardType.FIXED_DISCOUNT,
                                       value=Decimal("10"), minimum_points=500))
    loyalty.award_bonus("u1", "custom", points=1000)
    redemption = loyalty.redeem("u1", reward.id)
    await carts.add_item("u1", "p1", 2)

    assembly = make_assembly(store=BrokenStore())
    with pytest.raises(RuntimeError):
        await assembly.checkout("u1", CheckoutRequest(points_to_apply=200, redemption_code=redemption.code))

    assert await _stock(catalog, "p1") == 10
    assert loyalty.get_account("u1").available_points == 500
    assert redemption.status == RedemptionStatus.ACTIVE
    assert not carts.get_cart("u1").is_empty


@pytest.mark.asyncio
async def test_idempotent_replay(assembly, carts, catalog, store):
    await _fill_cart(carts)
    request = CheckoutRequest(idempotency_key="cart-42")
    first = await assembly.checkout("u1", request)
    second = await assembly.checkout("u1", request)

    assert second.id == first.id
    assert await _stock(catalog, "p1") == 8
    assert len(await store.list_for_user("u1")) == 1


@pytest.mark.asyncio
async def test_key_in_flight_rejected(assembly, carts):
    await _fill_cart(carts)
    key = generate_idempotency_key("checkout", user_id="u1", key="cart-43")
    assembly.idempotency.reserve(key, "u1", "checkout")
    with pytest.raises(CheckoutInProgress):
        await assembly.checkout("u1", CheckoutRequest(idempotency_key="cart-43"))


@pytest.mark.asyncio
async def test_failed_checkout_frees_key(assembly, carts):
    with pytest.raises(EmptyCart):
        await assembly.checkout("u1", CheckoutRequest(idempotency_key="cart-44"))
    await _fill_cart(carts)
    order = await assembly.checkout("u1", CheckoutRequest(idempotency_key="cart-44"))
    assert order.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_confirmation_failure_goes_to_dead_letters(make_assembly, carts, failing_notifier):
    assembly = make_assembly(notifier=failing_notifier)
    await _fill_cart(carts)
    order = await assembly.checkout("u1")
    await assembly.drain_notifications()

    letters = assembly.dead_letters.list_pending("notifications")
    assert [letter.subject for letter in letters] == [order.order_number]
    assert letters[0].payload == {"order_id": order.id, "user_id": "u1"}
    assert order.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_dead_lettered_confirmation_is_resent(make_assembly, carts, failing_notifier, notifier):
    assembly = make_assembly(notifier=failing_notifier)
    await _fill_cart(carts)
    order = await assembly.checkout("u1")
    await assembly.drain_notifications()

    assert await assembly.replay_notifications() == 0
    letter = assembly.dead_letters.list_pending("notifications")[0]
    assert letter.retry_count == 1

    assembly.notifier = notifier
    assert await assembly.replay_notifications() == 1
    assert notifier.confirmations == [(order.order_number, "u1")]
    assert len(assembly.dead_letters) == 0


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fixed_reward_discount(assembly, carts, loyalty):
    reward = loyalty.add_reward(Reward(name="$10 off", type=RewardType.FIXED_DISCOUNT,
                                       value=Decimal("10"), minimum_points=500))
    loyalty.award_bonus("u1", "custom", points=1000)
    redemption = loyalty.redeem("u1", reward.id)
    await carts.add_item("u1", "p1", 2)

    order = await assembly.checkout("u1", CheckoutRequest(redemption_code=redemption.code))
    assert order.pricing.reward_discount == Decimal("10.00")
    assert order.pricing.total == Decimal("30.00")
    assert redemption.status == RedemptionStatus.USED
    assert redemption.order_id == order.id

    await assembly.cancel(order.id, "changed my mind")
    assert redemption.status == RedemptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_expired_redemption_rejected(assembly, carts, catalog, loyalty, clock):
    reward = loyalty.add_reward(Reward(name="$10 off", type=RewardType.FIXED_DISCOUNT,
                                       value=Decimal("10"), minimum_points=500))
    loyalty.award_bonus("u1", "custom", points=1000)
    redemption = loyalty.redeem("u1", reward.id)
    await carts.add_item("u1", "p1", 2)

    clock.advance(days=120)
    with pytest.raises(RedemptionUnavailable):
        await assembly.checkout("u1", CheckoutRequest(redemption_code=redemption.code))
    assert await _stock(catalog, "p1") == 10


@pytest.mark.asyncio
async def test_free_product_reward(assembly, carts, loyalty):
    reward = loyalty.add_reward(Reward(name="Free hub", type=RewardType.FREE_PRODUCT,
                                       product_id="p2", minimum_points=300))
    loyalty.award_bonus("u1", "custom", points=1000)
    redemption = loyalty.redeem("u1", reward.id)

    await carts.add_item("u1", "p1", 1)
    with pytest.raises(RedemptionUnavailable):
        await assembly.checkout("u1", CheckoutRequest(redemption_code=redemption.code))

    await carts.add_item("u1", "p2", 1)
    order = await assembly.checkout("u1", CheckoutRequest(redemption_code=redemption.code))
    assert order.pricing.reward_discount == Decimal("15.00")
    assert order.pricing.total == Decimal("20.00")


@pytest.mark.asyncio
async def test_points_multiplier_reward(assembly, carts, loyalty):
    reward = loyalty.add_reward(Reward(name="Double points", type=RewardType.POINTS_MULTIPLIER,
                                       value=Decimal("2"), minimum_points=500))
    loyalty.award_bonus("u1", "custom", points=1000)
    redemption = loyalty.redeem("u1", reward.id)
    await carts.add_item("u1", "p1", 2)

    order = await assembly.checkout("u1", CheckoutRequest(redemption_code=redemption.code))
    await assembly.pay(order.id)
    assert loyalty.get_account("u1").available_points == 500 + 100


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pay_confirms_and_earns_points(assembly, carts, gateway, loyalty):
    await _fill_cart(carts)
    order = await assembly.checkout("u1")
    paid = await assembly.pay(order.id)

    assert paid.status == OrderStatus.CONFIRMED
    assert paid.payment_status == PaymentStatus.PAID
    assert paid.transaction_ref.startswith("txn_")
    assert paid.confirmed_at is not None
    assert loyalty.get_account("u1").available_points == 49
    assert [c["amount"] for c in gateway.charges] == [Decimal("49.50")]

    await assembly.pay(order.id)
    assert len(gateway.charges) == 1


@pytest.mark.asyncio
async def test_payment_timeout_leaves_order_pending(make_assembly, carts, catalog, config, clock, slow_gateway):
    assembly = make_assembly(payments=slow_gateway, config=_with_checkout(config, payment_timeout_seconds=0.05))
    await _fill_cart(carts)
    order = await assembly.checkout("u1")

    result = await assembly.pay(order.id)
    assert result.status == OrderStatus.PENDING
    assert result.payment_status == PaymentStatus.UNKNOWN
    assert (await assembly.store.get(order.id)).payment_status == PaymentStatus.UNKNOWN
    assert await _stock(catalog, "p1") == 8

    clock.advance(hours=1)
    assert await assembly.expire_stale_orders() == []
    assert await _stock(catalog, "p1") == 8

    reconciled = await assembly.confirm_payment(order.id, "txn_late")
    assert reconciled.status == OrderStatus.CONFIRMED
    assert reconciled.transaction_ref == "txn_late"


class LateCaptureGateway(InMemoryPaymentGateway):
    """Captures the charge, then answers too late."""

    async def charge(self, amount, currency, customer_ref):
        result = await super().charge(amount, currency, customer_ref)
        await asyncio.sleep(1.0)
        return result


@pytest.mark.asyncio
async def test_unknown_payment_is_not_charged_again(make_assembly, carts, catalog, config):
    gateway = LateCaptureGateway()
    assembly = make_assembly(payments=gateway, config=_with_checkout(config, payment_timeout_seconds=0.05))
    await _fill_cart(carts)
    order = await assembly.checkout("u1")

    assert (await assembly.pay(order.id)).payment_status == PaymentStatus.UNKNOWN
    with pytest.raises(InvalidStateTransition):
        await assembly.pay(order.id)
    assert len(gateway.charges) == 1
    assert await _stock(catalog, "p1") == 8

    cancelled = await assembly.cancel(order.id, "customer gave up")
    assert cancelled.status == OrderStatus.CANCELLED
    assert await _stock(catalog, "p1") == 10


@pytest.mark.asyncio
async def test_declined_payment(make_assembly, carts, declining_gateway):
    assembly = make_assembly(payments=declining_gateway)
    await _fill_cart(carts)
    order = await assembly.checkout("u1")

    with pytest.raises(PaymentFailed):
        await assembly.pay(order.id)
    stored = await assembly.store.get(order.id)
    assert stored.payment_status == PaymentStatus.FAILED
    assert stored.status == OrderStatus.PENDING


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_restores_stock(assembly, carts, catalog, flash_sales, clock):
    sale = await flash_sales.create_sale(
        "Hub rush", [{"product_id": "p2", "flash_price": "10.00", "stock": 3, "max_per_customer": 0}],
        start=clock(), end=clock() + timedelta(hours=1),
    )
    await carts.add_flash_sale_item("u1", sale.id, "p2", 2)
    await carts.add_item("u1", "p1", 2)
    order = await assembly.checkout("u1")
    assert sale.get_product("p2").stock == 1

    cancelled = await assembly.cancel(order.id, "changed my mind")
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert cancelled.cancellation_reason == "changed my mind"
    assert sale.get_product("p2").stock == 3
    assert await _stock(catalog, "p1") == 10


@pytest.mark.asyncio
async def test_cancel_refunds_points_and_payment(assembly, carts, gateway, loyalty):
    loyalty.award_bonus("u1", "custom", points=1000)
    await _fill_cart(carts)
    order = await assembly.checkout("u1", CheckoutRequest(points_to_apply=500))
    await assembly.pay(order.id)

    cancelled = await assembly.cancel(order.id, "duplicate order")
    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert gateway.refunds[0]["amount"] == Decimal("44.50")
    assert loyalty.get_account("u1").available_points == 1000 + 55


@pytest.mark.asyncio
async def test_shipped_order_cannot_be_cancelled(assembly, carts):
    await _fill_cart(carts)
    order = await assembly.checkout("u1")
    await assembly.pay(order.id)
    await assembly.update_status(order.id, OrderStatus.PROCESSING)
    shipped = await assembly.update_status(order.id, OrderStatus.SHIPPED, tracking_number="1Z999", carrier="UPS")
    assert shipped.tracking_number == "1Z999"
    assert shipped.shipped_at is not None

    with pytest.raises(InvalidStateTransition):
        await assembly.cancel(order.id)


@pytest.mark.asyncio
async def test_refund_status_refunds_payment(assembly, carts, gateway):
    await _fill_cart(carts)
    order = await assembly.checkout("u1")
    await assembly.pay(order.id)
    refunded = await assembly.update_status(order.id, OrderStatus.REFUNDED, message="damaged in transit")
    assert refunded.status == OrderStatus.REFUNDED
    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert gateway.refunds[0]["reason"] == "damaged in transit"


@pytest.mark.asyncio
async def test_stale_pending_orders_expire(assembly, carts, catalog, clock):
    await _fill_cart(carts)
    order = await assembly.checkout("u1")

    clock.advance(minutes=10)
    assert await assembly.expire_stale_orders() == []

    clock.advance(minutes=21)
    assert await assembly.expire_stale_orders() == [order.id]
    assert (await assembly.store.get(order.id)).status == OrderStatus.CANCELLED
    assert await _stock(catalog, "p1") == 10


@pytest.mark.asyncio
async def test_bundle_checkout_and_cancel(assembly, carts, bundles):
    bundle = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"), total_stock=2)
    await carts.add_bundle("u1", bundle.id, 1)
    order = await assembly.checkout("u1")
    assert order.pricing.total == Decimal("80.00")
    assert bundle.limits.sold_quantity == 1
    assert bundle.inventory.total_stock == 1

    await assembly.cancel(order.id)
    assert bundle.limits.sold_quantity == 0
    assert bundle.inventory.total_stock == 2


@pytest.mark.asyncio
async def test_orders_for_user(assembly, carts):
    await _fill_cart(carts, coupon=False)
    first = await assembly.checkout("u1")
    await carts.add_item("u1", "p3", 1)
    second = await assembly.checkout("u1")
    assert {o.id for o in await assembly.orders_for("u1")} == {first.id, second.id}
