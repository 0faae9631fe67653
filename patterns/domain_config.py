"""Dataclass-based domain configuration pattern.

Thresholds, rates and limits live in frozen dataclasses. This gives you:
- Type safety (IDE autocompletion, mypy checking)
- Default values (the storefront's production defaults)
- Immutability (frozen=True prevents accidental mutation)
- Easy overrides (from env vars, config files, or tests via dataclasses.replace)
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal


# ---------------------------------------------------------------------------
# Nested config sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PricingConfig:
    """Currency, shipping and tax applied at checkout."""

    currency: str = "USD"
    tax_rate: Decimal = Decimal("0")  # percent of the discounted subtotal
    shipping_flat_rate: Decimal = Decimal("0")
    free_shipping_threshold: Decimal = Decimal("0")  # 0 = never waived


@dataclass(frozen=True)
class FlashSaleConfig:
    """Flash-sale defaults and reservation retry policy."""

    default_stock: int = 10
    default_max_per_customer: int = 1
    reservation_max_retries: int = 3
    reservation_backoff_base: float = 0.005  # seconds
    reservation_backoff_max: float = 0.1


@dataclass(frozen=True)
class LoyaltyConfig:
    """Customer loyalty program settings."""

    points_per_dollar: Decimal = Decimal("1")
    tier_thresholds: dict[str, int] = field(default_factory=lambda: {
        "bronze": 0,
        "silver": 1000,
        "gold": 5000,
        "platinum": 15000,
        "diamond": 50000,
    })
    tier_multipliers: dict[str, Decimal] = field(default_factory=lambda: {
        "bronze": Decimal("1"),
        "silver": Decimal("1.25"),
        "gold": Decimal("1.5"),
        "platinum": Decimal("2"),
        "diamond": Decimal("3"),
    })
    points_per_currency_unit: int = 100  # 100 points = $1 off
    max_points_discount_ratio: Decimal = Decimal("0.5")
    redemption_validity_months: int = 3
    signup_bonus: int = 100
    review_bonus: int = 50
    referral_bonus: int = 500
    birthday_bonus: int = 200


@dataclass(frozen=True)
class CheckoutConfig:
    """Order assembly and payment behaviour."""

    payment_timeout_seconds: float = 10.0
    pending_order_ttl_minutes: int = 30
    idempotency_ttl_seconds: int = 3600
    order_number_prefix: str = "ORD"


# ---------------------------------------------------------------------------
# Top-level domain config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StorefrontConfig:
    """Complete configuration for the storefront promotions engine.

    Usage::

        config = StorefrontConfig.default()
        if subtotal >= config.pricing.free_shipping_threshold:
            shipping = Decimal("0")
    """

    pricing: PricingConfig = field(default_factory=PricingConfig)
    flash_sales: FlashSaleConfig = field(default_factory=FlashSaleConfig)
    loyalty: LoyaltyConfig = field(default_factory=LoyaltyConfig)
    checkout: CheckoutConfig = field(default_factory=CheckoutConfig)

    @classmethod
    def default(cls) -> "StorefrontConfig":
        """Create config with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, prefix: str = "STOREFRONT_") -> "StorefrontConfig":
        """Create config from environment variables.

        Example: STOREFRONT_TAX_RATE=8.875 STOREFRONT_PAYMENT_TIMEOUT_SECONDS=5
        """
        def env(name: str) -> str | None:
            return os.getenv(f"{prefix}{name}") or None

        config = cls()

        pricing = {}
        if env("CURRENCY"):
            pricing["currency"] = env("CURRENCY").strip().upper()
        if env("TAX_RATE"):
            pricing["tax_rate"] = Decimal(env("TAX_RATE"))
        if env("SHIPPING_FLAT_RATE"):
            pricing["shipping_flat_rate"] = Decimal(env("SHIPPING_FLAT_RATE"))
        if env("FREE_SHIPPING_THRESHOLD"):
            pricing["free_shipping_threshold"] = Decimal(env("FREE_SHIPPING_THRESHOLD"))

        flash = {}
        if env("RESERVATION_MAX_RETRIES"):
            flash["reservation_max_retries"] = int(env("RESERVATION_MAX_RETRIES"))

        loyalty = {}
        if env("REDEMPTION_VALIDITY_MONTHS"):
            loyalty["redemption_validity_months"] = int(env("REDEMPTION_VALIDITY_MONTHS"))

        checkout = {}
        if env("PAYMENT_TIMEOUT_SECONDS"):
            checkout["payment_timeout_seconds"] = float(env("PAYMENT_TIMEOUT_SECONDS"))
        if env("PENDING_ORDER_TTL_MINUTES"):
            checkout["pending_order_ttl_minutes"] = int(env("PENDING_ORDER_TTL_MINUTES"))

        return replace(
            config,
            pricing=replace(config.pricing, **pricing),
            flash_sales=replace(config.flash_sales, **flash),
            loyalty=replace(config.loyalty, **loyalty),
            checkout=replace(config.checkout, **checkout),
        )
