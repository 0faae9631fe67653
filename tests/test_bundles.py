"""Test the bundle engine: pricing, validation order and purchase allowance."""
from datetime import timedelta
from decimal import Decimal

import pytest

from verticals.storefront.bundles import BundleStatus
from verticals.storefront.errors import (
    BundleUnavailable,
    InsufficientStock,
    InvalidBundlePrice,
    PerCustomerLimitExceeded,
    ReservationConflict,
)


@pytest.mark.asyncio
async def test_savings_from_catalog_prices(bundles):
    bundle = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"))
    assert bundle.original_price == Decimal("100.00")
    assert bundle.savings_amount == Decimal("20.00")
    assert bundle.savings_percentage == 20
    assert bundle.slug == "desk-setup"
    assert [item.name for item in bundle.items] == ["Mechanical Keyboard", "Laptop Stand"]


@pytest.mark.asyncio
async def test_original_price_multiplies_quantities(bundles):
    bundle = await bundles.create_bundle("Mouse pair", [("p1", 2)], Decimal("35"))
    assert bundle.original_price == Decimal("40.00")
    assert bundle.savings_percentage == 13


@pytest.mark.asyncio
@pytest.mark.parametrize("price", [Decimal("100"), Decimal("120"), Decimal("0")])
async def test_bundle_price_must_undercut_original(bundles, price):
    with pytest.raises(InvalidBundlePrice):
        await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], price)


@pytest.mark.asyncio
async def test_price_change_recomputes_savings(bundles, catalog):
    bundle = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"))
    catalog.set_price("p3", "90.00")
    bundles.set_bundle_price(bundle.id, Decimal("90"))
    assert bundle.original_price == Decimal("100.00")
    assert bundle.savings_amount == Decimal("10.00")
    assert bundle.savings_percentage == 10


@pytest.mark.asyncio
async def test_item_discount_rule_from_input(bundles):
    bundle = await bundles.create_bundle(
        "Mouse pair",
        [{"product_id": "p1", "quantity": 2, "discount_type": "percentage", "discount_value": "10"}],
        Decimal("36"),
    )
    assert bundle.items[0].quantity == 2
    assert bundle.items[0].offer_price == Decimal("18.00")


@pytest.mark.asyncio
async def test_status_checked_before_allowance(bundles):
    bundle = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"), total_quantity=1)
    await bundles.purchase(bundle.id, 1, customer_id="u1")
    bundles.set_status(bundle.id, BundleStatus.INACTIVE)
    with pytest.raises(BundleUnavailable) as exc:
        bundles.validate_for_purchase(bundle.id, 1)
    assert exc.value.details["rule"] == "status"


@pytest.mark.asyncio
async def test_exhausted_allowance_is_insufficient_stock(bundles):
    bundle = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"), total_quantity=2)
    await bundles.purchase(bundle.id, 2, customer_id="u1")
    with pytest.raises(InsufficientStock):
        bundles.validate_for_purchase(bundle.id, 1)
    assert bundles.list_available() == []


@pytest.mark.asyncio
async def test_validity_window(bundles, clock):
    bundle = await bundles.create_bundle(
        "Holiday kit", [("p1", 1), ("p2", 1)], Decimal("30"),
        valid_from=clock() + timedelta(days=1), valid_until=clock() + timedelta(days=3),
    )
    with pytest.raises(BundleUnavailable):
        bundles.validate_for_purchase(bundle.id)

    clock.advance(days=2)
    assert bundles.validate_for_purchase(bundle.id) is bundle
    assert bundles.list_available() == [bundle]

    clock.advance(days=2)
    with pytest.raises(BundleUnavailable):
        bundles.validate_for_purchase(bundle.id)


@pytest.mark.asyncio
async def test_per_customer_limit(bundles):
    bundle = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"), per_customer=1)
    await bundles.purchase(bundle.id, 1, customer_id="u1")
    with pytest.raises(PerCustomerLimitExceeded):
        await bundles.purchase(bundle.id, 1, customer_id="u1")
    await bundles.purchase(bundle.id, 1, customer_id="u2")
    assert bundle.limits.sold_quantity == 2


@pytest.mark.asyncio
async def test_tracked_stock_and_release(bundles):
    bundle = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"), total_stock=3)
    await bundles.purchase(bundle.id, 2, customer_id="u1")
    assert bundle.inventory.total_stock == 1
    with pytest.raises(InsufficientStock):
        await bundles.purchase(bundle.id, 2, customer_id="u2")

    await bundles.release(bundle.id, 2, customer_id="u1")
    assert bundle.inventory.total_stock == 3
    assert bundle.limits.sold_quantity == 0
    assert "u1" not in bundle.customer_purchases


@pytest.mark.asyncio
async def test_low_stock_flag(bundles):
    bundle = await bundles.create_bundle(
        "Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"), total_stock=12, low_stock_threshold=10,
    )
    assert not bundle.is_low_stock
    await bundles.purchase(bundle.id, 2, customer_id="u1")
    assert bundle.is_low_stock


@pytest.mark.asyncio
async def test_stale_version_conflicts(bundles):
    bundle = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"))
    stale = bundle.version
    bundles.set_status(bundle.id, BundleStatus.ACTIVE)
    with pytest.raises(ReservationConflict):
        bundles._compare_and_swap(bundle.id, stale, lambda b: None)


@pytest.mark.asyncio
async def test_to_dict(bundles):
    bundle = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"))
    data = bundle.to_dict()
    assert data["pricing"] == {
        "original_price": "100.00",
        "bundle_price": "80.00",
        "savings_amount": "20.00",
        "savings_percentage": 20,
    }
    assert data["is_available"] is True


@pytest.mark.asyncio
async def test_lookup_by_slug(bundles, carts):
    first = await bundles.create_bundle("Desk setup", [("p3", 1), ("p4", 1)], Decimal("80"))
    second = await bundles.create_bundle("Desk setup", [("p1", 1), ("p2", 1)], Decimal("30"))
    assert second.slug == "desk-setup-2"
    assert bundles.get_bundle("desk-setup") is first
    assert bundles.validate_for_purchase("desk-setup-2") is second

    cart = await carts.add_bundle("u1", "desk-setup")
    assert cart.lines[0].source_id == first.id
