"""Storefront error taxonomy.

Every error carries a stable `code` for clients, a human-readable
`message`, and optional `details`. Validation errors are raised straight to
the caller; `ReservationConflict` is transient and retried internally.
"""

from typing import Any, Optional


class StorefrontError(Exception):
    """Base class for all engine errors."""

    code = "storefront_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(StorefrontError):
    code = "not_found"


class InsufficientStock(StorefrontError):
    code = "insufficient_stock"


class PerCustomerLimitExceeded(StorefrontError):
    code = "per_customer_limit_exceeded"


class ReservationConflict(StorefrontError):
    """A concurrent update won the compare-and-swap. Safe to retry."""

    code = "reservation_conflict"


class ProductUnavailable(StorefrontError):
    code = "product_unavailable"


class FlashSaleNotActive(StorefrontError):
    code = "flash_sale_not_active"


class InvalidFlashPrice(StorefrontError):
    code = "invalid_flash_price"


class InvalidBundlePrice(StorefrontError):
    code = "invalid_bundle_price"


class BundleUnavailable(StorefrontError):
    code = "bundle_unavailable"


class CouponNotEligible(StorefrontError):
    code = "coupon_not_eligible"


class InsufficientPoints(StorefrontError):
    code = "insufficient_points"


class DiscountCapExceeded(StorefrontError):
    code = "discount_cap_exceeded"


class RewardUnavailable(StorefrontError):
    code = "reward_unavailable"


class RedemptionUnavailable(StorefrontError):
    code = "redemption_unavailable"


class EmptyCart(StorefrontError):
    code = "empty_cart"


class InvalidStateTransition(StorefrontError, ValueError):
    code = "invalid_state_transition"


class PaymentFailed(StorefrontError):
    code = "payment_failed"


class CheckoutInProgress(StorefrontError):
    """The same idempotency key is already being processed."""

    code = "checkout_in_progress"
