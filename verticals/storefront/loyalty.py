"""Loyalty ledger.

Balances, tiers, rewards and redemptions. The ledger is the only writer of
point balances; every balance change appends a signed `PointsEntry` to a
per-user append-only history, read page by page.

    available = total - redeemed - expired (+ refunded)
    lifetime only ever grows; tier = highest threshold <= lifetime
"""

from __future__ import annotations

import calendar
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from core.observability.logging_setup import log_event
from patterns.domain_config import StorefrontConfig
from verticals.storefront.config import config as default_config
from verticals.storefront.errors import (
    DiscountCapExceeded,
    InsufficientPoints,
    NotFound,
    RedemptionUnavailable,
    RewardUnavailable,
)
from verticals.storefront.models.schemas import LoyaltyStatusPayload
from verticals.storefront.money import D, percentage_of, round_money

logger = logging.getLogger(__name__)


class LoyaltyTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


TIER_ORDER = list(LoyaltyTier)


class EntryKind(str, Enum):
    EARN = "earn"
    REDEEM = "redeem"
    EXPIRE = "expire"
    BONUS = "bonus"
    REFUND = "refund"


class RewardType(str, Enum):
    PERCENTAGE_DISCOUNT = "percentage_discount"
    FIXED_DISCOUNT = "fixed_discount"
    FREE_SHIPPING = "free_shipping"
    FREE_PRODUCT = "free_product"
    POINTS_MULTIPLIER = "points_multiplier"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


def _add_months(moment: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the month's last day."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class LoyaltyAccount:
    user_id: str
    total_points: int = 0
    available_points: int = 0
    lifetime_points: int = 0
    tier: LoyaltyTier = LoyaltyTier.BRONZE
    last_earned_at: Optional[datetime] = None


@dataclass(frozen=True)
class PointsEntry:
    user_id: str
    points: int  # signed
    kind: EntryKind
    description: str = ""
    order_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "points": self.points,
            "type": self.kind.value,
            "description": self.description,
            "order_id": self.order_id,
            "created_at": self.created_at.isoformat(),
        }


class Reward(BaseModel):
    """Catalog entry a customer can redeem points for."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(..., min_length=1)
    description: str = ""
    type: RewardType
    value: Decimal = Field(Decimal("0"), ge=0)
    minimum_points: int = Field(..., gt=0)
    minimum_purchase: Decimal = Field(Decimal("0"), ge=0)
    maximum_discount: Optional[Decimal] = Field(None, ge=0)
    product_id: Optional[str] = None  # free_product rewards
    expires_at: Optional[datetime] = None
    is_active: bool = True

    def is_redeemable(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or now <= self.expires_at)


@dataclass
class Redemption:
    user_id: str
    reward_id: str
    points_spent: int
    code: str
    expires_at: datetime
    status: RedemptionStatus = RedemptionStatus.ACTIVE
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    discount_applied: Decimal = Decimal("0")
    order_id: Optional[str] = None
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "reward_id": self.reward_id,
            "points_spent": self.points_spent,
            "code": self.code,
            "status": self.status.value,
            "discount_applied": str(self.discount_applied),
            "order_id": self.order_id,
            "expires_at": self.expires_at.isoformat(),
            "used_at": self.used_at.isoformat() if self.used_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class PointsDiscount:
    """Validated, not yet committed, conversion of points to money."""

    points: int
    discount_amount: Decimal
    points_remaining: int


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class LoyaltyLedger:
    """Owns every loyalty balance, the reward catalog and redemptions.

    Usage::

        ledger = LoyaltyLedger()
        ledger.earn_points("u1", Decimal("50.00"), order_id="ORD-2610-000001")
        offer = ledger.apply_points_as_discount("u1", 500, Decimal("40.00"))
        ledger.commit_points_discount("u1", offer.points, order_id=...)
    """

    def __init__(
        self,
        config: Optional[StorefrontConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or default_config
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._accounts: dict[str, LoyaltyAccount] = {}
        self._entries: dict[str, list[PointsEntry]] = {}
        self._rewards: dict[str, Reward] = {}
        self._redemptions: dict[str, Redemption] = {}  # by code
        self._lock = threading.RLock()

    @property
    def rules(self):
        return self.config.loyalty

    # -- Tiers --

    def multiplier_for(self, tier: LoyaltyTier) -> Decimal:
        return D(self.rules.tier_multipliers[LoyaltyTier(tier).value])

    def tier_for(self, lifetime_points: int) -> LoyaltyTier:
        reached = LoyaltyTier.BRONZE
        for tier in TIER_ORDER:
            if lifetime_points >= self.rules.tier_thresholds[tier.value]:
                reached = tier
        return reached

    @staticmethod
    def next_tier(tier: LoyaltyTier) -> Optional[LoyaltyTier]:
        index = TIER_ORDER.index(LoyaltyTier(tier))
        return TIER_ORDER[index + 1] if index < len(TIER_ORDER) - 1 else None

    def tier_progress(self, account: LoyaltyAccount) -> int:
        nxt = self.next_tier(account.tier)
        if nxt is None:
            return 0
        current = self.rules.tier_thresholds[account.tier.value]
        span = self.rules.tier_thresholds[nxt.value] - current
        return min(percentage_of(account.lifetime_points - current, span), 100)

    def tiers(self) -> list[dict[str, Any]]:
        return [
            {
                "tier": tier.value,
                "minimum_points": self.rules.tier_thresholds[tier.value],
                "multiplier": str(self.multiplier_for(tier)),
            }
            for tier in TIER_ORDER
        ]

    # -- Accounts and history --

    def get_account(self, user_id: str) -> LoyaltyAccount:
        with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                account = LoyaltyAccount(user_id=user_id)
                self._accounts[user_id] = account
                self._entries[user_id] = []
            return account

    def _append(self, account: LoyaltyAccount, points: int, kind: EntryKind,
                description: str, order_id: Optional[str]) -> PointsEntry:
        entry = PointsEntry(account.user_id, points, kind, description, order_id, self.clock())
        self._entries[account.user_id].append(entry)
        return entry

    def _credit(self, account: LoyaltyAccount, points: int, kind: EntryKind,
                description: str, order_id: Optional[str]) -> PointsEntry:
        account.total_points += points
        account.available_points += points
        account.lifetime_points += points
        account.last_earned_at = self.clock()
        previous = account.tier
        account.tier = max(previous, self.tier_for(account.lifetime_points), key=TIER_ORDER.index)
        if account.tier != previous:
            log_event(logger, "info", "loyalty.tier_changed", user_id=account.user_id,
                      from_tier=previous.value, to_tier=account.tier.value)
        return self._append(account, points, kind, description, order_id)

    def history(self, user_id: str, page: int = 1, limit: int = 20) -> tuple[list[PointsEntry], int]:
        """Newest-first page of a user's entries, plus the total count."""
        with self._lock:
            self.get_account(user_id)
            entries = self._entries[user_id]
            total = len(entries)
            newest_first = entries[::-1]
        offset = (page - 1) * limit
        return newest_first[offset:offset + limit], total

    def status(self, user_id: str) -> LoyaltyStatusPayload:
        account = self.get_account(user_id)
        nxt = self.next_tier(account.tier)
        to_next = self.rules.tier_thresholds[nxt.value] - account.lifetime_points if nxt else 0
        return LoyaltyStatusPayload(
            user_id=user_id,
            tier=account.tier.value,
            total_points=account.total_points,
            available_points=account.available_points,
            lifetime_points=account.lifetime_points,
            tier_progress=self.tier_progress(account),
            next_tier=nxt.value if nxt else None,
            points_to_next_tier=max(to_next, 0),
            multiplier=self.multiplier_for(account.tier),
            last_earned_at=account.last_earned_at,
        )

    # -- Earning --

    def preview_points(self, tier: LoyaltyTier, order_total, bonus_multiplier=Decimal("1")) -> int:
        raw = D(order_total) * D(self.rules.points_per_dollar) * self.multiplier_for(tier) * D(bonus_multiplier)
        return max(int(raw.to_integral_value(rounding=ROUND_FLOOR)), 0)

    def earn_points(self, user_id: str, order_total, order_id: Optional[str] = None,
                    bonus_multiplier=Decimal("1")) -> PointsEntry:
        with self._lock:
            account = self.get_account(user_id)
            points = self.preview_points(account.tier, order_total, bonus_multiplier)
            entry = self._credit(account, points, EntryKind.EARN,
                                 f"Earned on order total {round_money(order_total)}", order_id)
        log_event(logger, "info", "loyalty.earned", user_id=user_id, points=points,
                  order_id=order_id, tier=account.tier.value)
        return entry

    def award_bonus(self, user_id: str, reason: str, points: Optional[int] = None) -> PointsEntry:
        """Credit a signup, review, referral or birthday bonus."""
        if points is None:
            try:
                points = getattr(self.rules, f"{reason}_bonus")
            except AttributeError:
                raise ValueError(f"Unknown bonus: {reason}") from None
        if points <= 0:
            raise ValueError("Bonus points must be positive")
        with self._lock:
            account = self.get_account(user_id)
            entry = self._credit(account, points, EntryKind.BONUS, f"{reason.capitalize()} bonus", None)
        log_event(logger, "info", "loyalty.bonus", user_id=user_id, points=points, reason=reason)
        return entry

    # -- Spending points --

    def apply_points_as_discount(self, user_id: str, points: int, order_total) -> PointsDiscount:
        """Validate a points-for-money conversion. Does not touch the balance."""
        if points <= 0:
            raise ValueError("Points must be positive")
        account = self.get_account(user_id)
        if account.available_points < points:
            raise InsufficientPoints(
                f"{points} points requested, {account.available_points} available",
                {"requested": points, "available": account.available_points},
            )
        amount = round_money(D(points) / D(self.rules.points_per_currency_unit))
        cap = round_money(D(order_total) * D(self.rules.max_points_discount_ratio))
        if amount > cap:
            raise DiscountCapExceeded(
                f"Points discount {amount} exceeds the maximum of {cap}",
                {"discount": str(amount), "maximum": str(cap)},
            )
        return PointsDiscount(points, amount, account.available_points - points)

    def commit_points_discount(self, user_id: str, points: int, order_id: Optional[str] = None) -> PointsEntry:
        with self._lock:
            account = self.get_account(user_id)
            if account.available_points < points:
                raise InsufficientPoints(
                    f"{points} points requested, {account.available_points} available",
                    {"requested": points, "available": account.available_points},
                )
            account.available_points -= points
            entry = self._append(account, -points, EntryKind.REDEEM, "Applied as order discount", order_id)
        log_event(logger, "info", "loyalty.points_applied", user_id=user_id, points=points, order_id=order_id)
        return entry

    def refund_points(self, user_id: str, points: int, order_id: Optional[str] = None,
                      description: str = "Refunded points") -> PointsEntry:
        """Give back previously spent points. Lifetime points are unchanged."""
        with self._lock:
            account = self.get_account(user_id)
            account.available_points += points
            entry = self._append(account, points, EntryKind.REFUND, description, order_id)
        log_event(logger, "info", "loyalty.refunded", user_id=user_id, points=points, order_id=order_id)
        return entry

    def expire_points(self, user_id: str, points: int, description: str = "Points expired") -> PointsEntry:
        with self._lock:
            account = self.get_account(user_id)
            points = min(points, account.available_points)
            account.available_points -= points
            entry = self._append(account, -points, EntryKind.EXPIRE, description, None)
        log_event(logger, "info", "loyalty.expired", user_id=user_id, points=points)
        return entry

    # -- Rewards and redemptions --

    def add_reward(self, reward: Reward) -> Reward:
        with self._lock:
            self._rewards[reward.id] = reward
        return reward

    def get_reward(self, reward_id: str) -> Reward:
        reward = self._rewards.get(reward_id)
        if reward is None:
            raise NotFound(f"Reward {reward_id} not found", {"reward_id": reward_id})
        return reward

    def available_rewards(self, user_id: str) -> list[Reward]:
        available = self.get_account(user_id).available_points
        now = self.clock()
        return [r for r in self._rewards.values() if r.is_redeemable(now) and r.minimum_points <= available]

    def _new_code(self) -> str:
        while True:
            code = f"LOYALTY-{secrets.token_hex(5).upper()}"
            if code not in self._redemptions:
                return code

    def redeem(self, user_id: str, reward_id: str) -> Redemption:
        now = self.clock()
        with self._lock:
            reward = self.get_reward(reward_id)
            if not reward.is_redeemable(now):
                raise RewardUnavailable(f"Reward {reward.name} is not active", {"reward_id": reward_id})
            account = self.get_account(user_id)
            if account.available_points < reward.minimum_points:
                raise InsufficientPoints(
                    f"{reward.minimum_points} points required, {account.available_points} available",
                    {"required": reward.minimum_points, "available": account.available_points},
                )
            account.available_points -= reward.minimum_points
            self._append(account, -reward.minimum_points, EntryKind.REDEEM, f"Redeemed: {reward.name}", None)

            redemption = Redemption(
                user_id=user_id,
                reward_id=reward.id,
                points_spent=reward.minimum_points,
                code=self._new_code(),
                expires_at=_add_months(now, self.rules.redemption_validity_months),
                created_at=now,
            )
            self._redemptions[redemption.code] = redemption

        log_event(logger, "info", "loyalty.redeemed", user_id=user_id, reward_id=reward_id,
                  points=reward.minimum_points, code=redemption.code)
        return redemption

    def get_redemption(self, code: str) -> Redemption:
        redemption = self._redemptions.get(code)
        if redemption is None:
            raise NotFound(f"Redemption code {code} not found", {"code": code})
        return redemption

    def redemptions(self, user_id: str) -> list[Redemption]:
        mine = [r for r in self._redemptions.values() if r.user_id == user_id]
        return sorted(mine, key=lambda r: r.created_at, reverse=True)

    def validate_redemption(self, code: str, user_id: str) -> tuple[Redemption, Reward]:
        """Check that `code` belongs to `user_id` and can still be used."""
        redemption = self.get_redemption(code)
        if redemption.user_id != user_id:
            raise RedemptionUnavailable("Redemption code belongs to another customer", {"code": code})
        if redemption.status == RedemptionStatus.ACTIVE and self.clock() > redemption.expires_at:
            redemption.status = RedemptionStatus.EXPIRED
        if redemption.status != RedemptionStatus.ACTIVE:
            raise RedemptionUnavailable(
                f"Redemption code is {redemption.status.value}",
                {"code": code, "status": redemption.status.value},
            )
        return redemption, self.get_reward(redemption.reward_id)

    def mark_redemption_used(self, code: str, order_id: str, discount_applied=Decimal("0")) -> Redemption:
        with self._lock:
            redemption = self.get_redemption(code)
            if redemption.status != RedemptionStatus.ACTIVE:
                raise RedemptionUnavailable(
                    f"Redemption code is {redemption.status.value}",
                    {"code": code, "status": redemption.status.value},
                )
            redemption.status = RedemptionStatus.USED
            redemption.order_id = order_id
            redemption.used_at = self.clock()
            redemption.discount_applied = round_money(discount_applied)
        return redemption

    def reactivate_redemption(self, code: str) -> Redemption:
        """Undo `mark_redemption_used` for an order that did not go through."""
        with self._lock:
            redemption = self.get_redemption(code)
            if redemption.status == RedemptionStatus.USED:
                expired = self.clock() > redemption.expires_at
                redemption.status = RedemptionStatus.EXPIRED if expired else RedemptionStatus.ACTIVE
                redemption.order_id = None
                redemption.used_at = None
                redemption.discount_applied = Decimal("0")
        return redemption

    def expire_redemptions(self) -> int:
        """Sweep unused codes past their expiry. Returns how many expired."""
        now = self.clock()
        expired = 0
        with self._lock:
            for redemption in self._redemptions.values():
                if redemption.status in (RedemptionStatus.ACTIVE, RedemptionStatus.PENDING) \
                        and now > redemption.expires_at:
                    redemption.status = RedemptionStatus.EXPIRED
                    expired += 1
        if expired:
            log_event(logger, "info", "loyalty.redemptions_expired", count=expired)
        return expired
