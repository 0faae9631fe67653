"""Test the loyalty ledger: earning, tiers, points discounts and redemptions."""
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from verticals.storefront.errors import (
    DiscountCapExceeded,
    InsufficientPoints,
    RedemptionUnavailable,
    RewardUnavailable,
)
from verticals.storefront.loyalty import (
    EntryKind,
    LoyaltyTier,
    RedemptionStatus,
    Reward,
    RewardType,
    _add_months,
)
from verticals.storefront.models.schemas import LoyaltyStatusPayload


def _reward(**overrides):
    fields = dict(name="$10 off", type=RewardType.FIXED_DISCOUNT, value=Decimal("10"), minimum_points=500)
    fields.update(overrides)
    return Reward(**fields)


def test_earn_one_point_per_dollar(loyalty):
    entry = loyalty.earn_points("u1", Decimal("50.00"), order_id="o1")
    assert entry.points == 50
    assert entry.kind == EntryKind.EARN
    account = loyalty.get_account("u1")
    assert (account.total_points, account.available_points, account.lifetime_points) == (50, 50, 50)


def test_points_are_floored(loyalty):
    assert loyalty.earn_points("u1", Decimal("10.99")).points == 10


def test_crossing_threshold_promotes_tier(loyalty):
    loyalty.earn_points("u1", Decimal("999"))
    assert loyalty.get_account("u1").tier == LoyaltyTier.BRONZE
    loyalty.earn_points("u1", Decimal("1"))
    assert loyalty.get_account("u1").tier == LoyaltyTier.SILVER

    assert loyalty.earn_points("u1", Decimal("100")).points == 125


def test_bonus_multiplier(loyalty):
    assert loyalty.earn_points("u1", Decimal("40"), bonus_multiplier=Decimal("2")).points == 80


def test_tier_progress(loyalty):
    loyalty.award_bonus("u1", "custom", points=500)
    assert loyalty.tier_progress(loyalty.get_account("u1")) == 50

    loyalty.award_bonus("u2", "custom", points=60000)
    account = loyalty.get_account("u2")
    assert account.tier == LoyaltyTier.DIAMOND
    assert loyalty.tier_progress(account) == 0
    assert loyalty.next_tier(account.tier) is None


def test_named_bonuses(loyalty):
    assert loyalty.award_bonus("u1", "signup").points == 100
    assert loyalty.award_bonus("u1", "referral").points == 500
    with pytest.raises(ValueError):
        loyalty.award_bonus("u1", "anniversary")


def test_points_discount_does_not_touch_balance(loyalty):
    loyalty.award_bonus("u1", "custom", points=800)
    offer = loyalty.apply_points_as_discount("u1", 500, Decimal("40.00"))
    assert offer.discount_amount == Decimal("5.00")
    assert offer.points_remaining == 300
    assert loyalty.get_account("u1").available_points == 800


def test_points_discount_limits(loyalty):
    loyalty.award_bonus("u1", "custom", points=2000)
    with pytest.raises(InsufficientPoints):
        loyalty.apply_points_as_discount("u1", 2500, Decimal("100"))
    with pytest.raises(DiscountCapExceeded):
        loyalty.apply_points_as_discount("u1", 2000, Decimal("30"))
    assert loyalty.apply_points_as_discount("u1", 1500, Decimal("30")).discount_amount == Decimal("15.00")


def test_commit_and_refund(loyalty):
    loyalty.award_bonus("u1", "custom", points=1000)
    loyalty.commit_points_discount("u1", 400, order_id="o1")
    account = loyalty.get_account("u1")
    assert account.available_points == 600

    loyalty.refund_points("u1", 400, order_id="o1")
    assert account.available_points == 1000
    assert account.lifetime_points == 1000


def test_expire_points_never_below_zero(loyalty):
    loyalty.award_bonus("u1", "custom", points=100)
    entry = loyalty.expire_points("u1", 250)
    assert entry.points == -100
    assert loyalty.get_account("u1").available_points == 0


def test_history_is_newest_first(loyalty, clock):
    for total in (10, 20, 30):
        loyalty.earn_points("u1", Decimal(total))
        clock.advance(minutes=1)
    entries, total = loyalty.history("u1", page=1, limit=2)
    assert total == 3
    assert [e.points for e in entries] == [30, 20]
    entries, _ = loyalty.history("u1", page=2, limit=2)
    assert [e.points for e in entries] == [10]


def test_redeem_issues_code(loyalty, clock):
    reward = loyalty.add_reward(_reward())
    loyalty.award_bonus("u1", "custom", points=700)
    redemption = loyalty.redeem("u1", reward.id)

    assert re.fullmatch(r"LOYALTY-[0-9A-F]{10}", redemption.code)
    assert redemption.status == RedemptionStatus.ACTIVE
    assert redemption.expires_at == datetime(2027, 1, 18, 12, 0, tzinfo=timezone.utc)
    assert loyalty.get_account("u1").available_points == 200
    assert loyalty.redemptions("u1") == [redemption]


def test_redeem_requires_points_and_active_reward(loyalty):
    reward = loyalty.add_reward(_reward())
    loyalty.award_bonus("u1", "custom", points=100)
    with pytest.raises(InsufficientPoints):
        loyalty.redeem("u1", reward.id)

    retired = loyalty.add_reward(_reward(minimum_points=50, is_active=False))
    with pytest.raises(RewardUnavailable):
        loyalty.redeem("u1", retired.id)


def test_available_rewards(loyalty):
    cheap = loyalty.add_reward(_reward(minimum_points=100))
    loyalty.add_reward(_reward(minimum_points=5000))
    loyalty.award_bonus("u1", "custom", points=200)
    assert loyalty.available_rewards("u1") == [cheap]


def test_redemption_expires(loyalty, clock):
    reward = loyalty.add_reward(_reward())
    loyalty.award_bonus("u1", "custom", points=1000)
    redemption = loyalty.redeem("u1", reward.id)
    loyalty.validate_redemption(redemption.code, "u1")

    clock.advance(days=120)
    with pytest.raises(RedemptionUnavailable):
        loyalty.validate_redemption(redemption.code, "u1")
    assert redemption.status == RedemptionStatus.EXPIRED


def test_expiry_sweep(loyalty, clock):
    reward = loyalty.add_reward(_reward(minimum_points=100))
    loyalty.award_bonus("u1", "custom", points=1000)
    loyalty.redeem("u1", reward.id)
    used = loyalty.redeem("u1", reward.id)
    loyalty.mark_redemption_used(used.code, "o1", Decimal("10"))

    clock.advance(days=120)
    assert loyalty.expire_redemptions() == 1
    assert used.status == RedemptionStatus.USED


def test_redemption_belongs_to_owner(loyalty):
    reward = loyalty.add_reward(_reward())
    loyalty.award_bonus("u1", "custom", points=1000)
    redemption = loyalty.redeem("u1", reward.id)
    with pytest.raises(RedemptionUnavailable):
        loyalty.validate_redemption(redemption.code, "u2")


def test_used_redemption_reactivates(loyalty):
    reward = loyalty.add_reward(_reward())
    loyalty.award_bonus("u1", "custom", points=1000)
    redemption = loyalty.redeem("u1", reward.id)
    loyalty.mark_redemption_used(redemption.code, "o1", Decimal("10"))
    with pytest.raises(RedemptionUnavailable):
        loyalty.mark_redemption_used(redemption.code, "o2")

    loyalty.reactivate_redemption(redemption.code)
    assert redemption.status == RedemptionStatus.ACTIVE
    assert redemption.order_id is None


def test_reward_requires_positive_points():
    with pytest.raises(ValidationError):
        _reward(minimum_points=0)


def test_status_payload(loyalty):
    loyalty.earn_points("u1", Decimal("250"))
    status = loyalty.status("u1")
    assert isinstance(status, LoyaltyStatusPayload)
    assert status.tier == "bronze"
    assert status.next_tier == "silver"
    assert status.points_to_next_tier == 750
    assert status.tier_progress == 25
    assert status.multiplier == Decimal("1")


def test_add_months_clamps_day():
    moment = datetime(2027, 1, 31, tzinfo=timezone.utc)
    assert _add_months(moment, 1) == datetime(2027, 2, 28, tzinfo=timezone.utc)
    assert _add_months(moment, 12) == datetime(2028, 1, 31, tzinfo=timezone.utc)
    assert _add_months(moment, 1) - moment == timedelta(days=28)


def test_lifetime_points_never_decrease(loyalty):
    reward = loyalty.add_reward(_reward(minimum_points=300))
    account = loyalty.get_account("u1")
    seen = [account.lifetime_points]

    steps = [
        lambda: loyalty.earn_points("u1", Decimal("450")),
        lambda: loyalty.redeem("u1", reward.id),
        lambda: loyalty.commit_points_discount("u1", 100, order_id="o1"),
        lambda: loyalty.earn_points("u1", Decimal("600")),
        lambda: loyalty.expire_points("u1", 200),
        lambda: loyalty.redeem("u1", reward.id),
        lambda: loyalty.refund_points("u1", 100, order_id="o1"),
    ]
    for step in steps:
        step()
        seen.append(account.lifetime_points)

    assert seen == sorted(seen)
    assert account.lifetime_points == 1050
    assert account.tier == "silver"
