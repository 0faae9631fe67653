"""Money and discount primitives — pure functions, no dependencies.

Amounts are `Decimal` and round to two places, half-up. A discount rule is
a closed variant: `PercentageDiscount` or `FixedDiscount`, evaluated by the
single function `evaluate_discount`.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

Money = Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def D(x) -> Money:
    """Coerce ints, floats, strings and None to Decimal without float noise."""
    return x if isinstance(x, Decimal) else Decimal(str(x or "0"))


def round_money(x) -> Money:
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)


def round_percent(x) -> int:
    """Whole-number percentage, half-up."""
    return int(D(x).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage_of(part, whole) -> int:
    """`part` as a whole-number percentage of `whole` (0 when whole is 0)."""
    whole = D(whole)
    if whole == ZERO:
        return 0
    return round_percent(D(part) / whole * HUNDRED)


# ---------------------------------------------------------------------------
# Discount rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PercentageDiscount:
    """`value` percent off, optionally capped at `cap`."""

    value: Decimal
    cap: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, "value", D(self.value))
        if self.cap is not None:
            object.__setattr__(self, "cap", D(self.cap))
        if not ZERO <= self.value <= HUNDRED:
            raise ValueError("percentage must be between 0 and 100")
        if self.cap is not None and self.cap < ZERO:
            raise ValueError("cap must be >= 0")

    @property
    def kind(self) -> str:
        return "percentage"


@dataclass(frozen=True)
class FixedDiscount:
    """A flat `amount` off."""

    amount: Decimal

    def __post_init__(self):
        object.__setattr__(self, "amount", D(self.amount))
        if self.amount < ZERO:
            raise ValueError("amount must be >= 0")

    @property
    def kind(self) -> str:
        return "fixed"


DiscountRule = Union[PercentageDiscount, FixedDiscount]


def evaluate_discount(rule: Optional[DiscountRule], base) -> Money:
    """Discount `rule` yields on `base`, rounded and clamped to [0, base]."""
    base = D(base)
    if rule is None or base <= ZERO:
        return ZERO

    if isinstance(rule, PercentageDiscount):
        amount = base * rule.value / HUNDRED
        if rule.cap is not None and amount > rule.cap:
            amount = rule.cap
    elif isinstance(rule, FixedDiscount):
        amount = rule.amount
    else:
        raise TypeError(f"Unknown discount rule: {rule!r}")

    return min(round_money(amount), round_money(base))


def discount_with_minimum(rule: Optional[DiscountRule], base, minimum=ZERO) -> Money:
    """Like `evaluate_discount`, but zero when `base` is below `minimum`."""
    if D(base) < D(minimum):
        return ZERO
    return evaluate_discount(rule, base)


def apply_discount(price, rule: Optional[DiscountRule]) -> Money:
    """Price after `rule`, never negative."""
    return round_money(D(price) - evaluate_discount(rule, price))


def rule_to_dict(rule: Optional[DiscountRule]) -> Optional[dict]:
    if rule is None:
        return None
    if isinstance(rule, PercentageDiscount):
        return {"type": "percentage", "value": str(rule.value), "cap": None if rule.cap is None else str(rule.cap)}
    return {"type": "fixed", "value": str(rule.amount)}


def rule_from_dict(data: Optional[dict]) -> Optional[DiscountRule]:
    if not data:
        return None
    if data.get("type") == "percentage":
        cap = data.get("cap")
        return PercentageDiscount(D(data["value"]), None if cap is None else D(cap))
    return FixedDiscount(D(data["value"]))
