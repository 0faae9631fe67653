"""Pure-function rules engine pattern.

Rules are stateless functions: (facts) -> RuleResult.
No storage, no side effects, no clock reads. This makes them:
- Trivially testable (pure input/output)
- Composable (chain multiple rules, in a fixed order)
- Auditable (deterministic, explainable)

The storefront engines evaluate these before mutating anything: stock
availability, coupon minimums, validity windows, purchase allowances.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class RuleResult:
    """Outcome of a single rule evaluation."""

    passed: bool
    rule_name: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleSetResult:
    """Aggregate outcome of multiple rules."""

    all_passed: bool
    results: list[RuleResult]
    failed: list[RuleResult] = field(default_factory=list)

    def __post_init__(self):
        self.failed = [r for r in self.results if not r.passed]
        self.all_passed = len(self.failed) == 0

    @property
    def first_failure(self) -> Optional[RuleResult]:
        """The earliest failing rule in evaluation order."""
        return self.failed[0] if self.failed else None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def check_stock_availability(
    available: int,
    quantity: int,
    backorder_allowed: bool = False,
) -> RuleResult:
    """Check that `quantity` units can be supplied."""
    passed = backorder_allowed or available >= quantity

    return RuleResult(
        passed=passed,
        rule_name="stock_availability",
        message=(
            f"In stock: {available} available"
            if passed
            else f"Insufficient stock: {available} available, {quantity} requested"
        ),
        details={"available": available, "requested": quantity, "backorder_allowed": backorder_allowed},
    )


def check_minimum_purchase(subtotal: Decimal, minimum: Decimal) -> RuleResult:
    """Check that a subtotal reaches a purchase minimum."""
    passed = subtotal >= minimum
    return RuleResult(
        passed=passed,
        rule_name="minimum_purchase",
        message=(
            "Minimum purchase met"
            if passed
            else f"Minimum purchase of ${minimum:.2f} required, subtotal is ${subtotal:.2f}"
        ),
        details={"subtotal": str(subtotal), "minimum": str(minimum)},
    )


def check_status(actual: str, expected: str, subject: str = "item") -> RuleResult:
    """Check that an entity is in the expected status."""
    passed = actual == expected
    return RuleResult(
        passed=passed,
        rule_name="status",
        message=f"{subject} is {actual}" if passed else f"{subject} is {actual}, expected {expected}",
        details={"actual": actual, "expected": expected},
    )


def check_allowance(limit: int, used: int, quantity: int, rule_name: str = "allowance") -> RuleResult:
    """Check a counted allowance. A limit of 0 means unlimited."""
    remaining = None if limit <= 0 else limit - used
    passed = remaining is None or remaining >= quantity
    return RuleResult(
        passed=passed,
        rule_name=rule_name,
        message=(
            "Within allowance"
            if passed
            else f"Only {max(remaining or 0, 0)} remaining, {quantity} requested"
        ),
        details={"limit": limit, "used": used, "requested": quantity, "remaining": remaining},
    )


def check_within_window(
    now: datetime,
    start: Optional[datetime],
    end: Optional[datetime],
) -> RuleResult:
    """Check that `now` falls inside an optional [start, end] window."""
    if start is not None and now < start:
        return RuleResult(
            passed=False,
            rule_name="validity_window",
            message="Not yet available",
            details={"now": now.isoformat(), "start": start.isoformat()},
        )
    if end is not None and now > end:
        return RuleResult(
            passed=False,
            rule_name="validity_window",
            message="Has expired",
            details={"now": now.isoformat(), "end": end.isoformat()},
        )
    return RuleResult(passed=True, rule_name="validity_window", message="Within validity window")


# ---------------------------------------------------------------------------
# Rule composition
# ---------------------------------------------------------------------------

def evaluate_rules(*rules: RuleResult) -> RuleSetResult:
    """Compose multiple rule results into a single aggregate.

    Example::

        result = evaluate_rules(
            check_status(bundle.status.value, "active", "Bundle"),
            check_allowance(limits.total_quantity, limits.sold_quantity, qty),
        )
        if not result.all_passed:
            raise error_for(result.first_failure)
    """
    return RuleSetResult(
        all_passed=all(r.passed for r in rules),
        results=list(rules),
    )
