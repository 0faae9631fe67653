"""Storefront vertical — promotional pricing and stock reservation.

Components, leaves first:
- Money and discount primitives (money.py)
- Cart aggregator with coupon recompute (cart.py)
- Bundle engine with savings and purchase allowance (bundles.py)
- Flash sale engine with atomic stock pools (flash_sales.py)
- Loyalty ledger with tiers, rewards and redemptions (loyalty.py)
- Order lifecycle and checkout orchestration (orders.py, checkout.py)
"""
