"""요금제 카탈로그와 결제 분류 규칙.

결제(transaction.completed)가 들어오면 어떤 종류의 결제인지 판별해 지급할 크레딧을 정한다.

- 정기 갱신: 플랜 크레딧 전액
- 신규 구독: 플랜 크레딧 전액
- 상위 티어 업그레이드: 월 크레딧 차액만 (이전 플랜 크레딧은 이미 받았으므로)
- 하위 티어 다운그레이드 / 결제 주기 변경: 0
- 추가 크레딧 구매: 단위 크레딧 x 수량
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping

from ..config import BillingConfig, PlanConfig, PriceConfig
from ..models.balance import BillingCycle, SubscriptionSnapshot, SubscriptionStatus
from .payloads import first_item, map_status, parse_datetime


class PurchaseKind(StrEnum):
    RENEWAL = "renewal"
    NEW_SUBSCRIPTION = "new_subscription"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    BILLING_CYCLE_CHANGE = "billing_cycle_change"
    ADDON = "addon"


@dataclass(slots=True)
class PurchaseAnalysis:
    kind: PurchaseKind
    credits_to_add: int
    previous_tier: str | None
    new_tier: str | None
    reason: str


class PlanCatalog:
    def __init__(self, config: BillingConfig) -> None:
        self._config = config
        self._plans_by_product: dict[str, PlanConfig] = {
            plan.product_id: plan for plan in config.plans
        }
        self._prices: dict[str, tuple[PlanConfig, PriceConfig]] = {
            price.price_id: (plan, price)
            for plan in config.plans
            for price in plan.prices
        }

    # -------- 조회 --------

    def is_addon_price(self, price_id: str | None) -> bool:
        addon = self._config.addon
        return addon is not None and price_id == addon.price_id

    def credits_for_price(self, price_id: str | None, quantity: int = 1) -> int:
        if price_id is None:
            return 0
        addon = self._config.addon
        if addon is not None and price_id == addon.price_id:
            return addon.credits_per_unit * max(quantity, 1)
        found = self._prices.get(price_id)
        return found[1].credits if found else 0

    def monthly_credits_for_product(self, product_id: str | None) -> int:
        plan = self._plans_by_product.get(product_id or "")
        return plan.monthly_credits if plan else 0

    def billing_cycle(self, price_id: str | None) -> BillingCycle:
        found = self._prices.get(price_id or "")
        if found and found[1].billing_cycle == "annual":
            return BillingCycle.ANNUAL
        return BillingCycle.MONTHLY

    def plan_name(self, price_id: str | None) -> str:
        if self.is_addon_price(price_id):
            assert self._config.addon is not None
            return self._config.addon.name
        found = self._prices.get(price_id or "")
        return found[0].name if found else "Unknown"

    def tier_for_product(self, product_id: str | None) -> str | None:
        plan = self._plans_by_product.get(product_id or "")
        return plan.tier if plan else None

    def tier_level(self, tier: str | None) -> int:
        return self._config.tier_levels.get(tier or "", 0)

    # -------- 스냅샷 --------

    def build_snapshot(
        self,
        subscription: Mapping[str, Any],
        *,
        now: datetime,
        previous: SubscriptionSnapshot | None = None,
    ) -> SubscriptionSnapshot:
        """결제사 구독 객체로부터 로컬 스냅샷을 만든다.

        previous 가 다른 상품/가격이면 transaction.completed 가 업그레이드/주기 변경을 판별할 수
        있도록 previous_* 마커를 남긴다. 연간 플랜은 첫 달 크레딧이 결제로 지급되므로
        다음 월 지급일을 interval 이후로 잡는 것은 호출자 책임이다.
        """
        price_id, product_id, _ = first_item(subscription)
        period = subscription.get("current_billing_period") or {}
        scheduled = subscription.get("scheduled_change") or {}

        snapshot = SubscriptionSnapshot(
            id=str(subscription["id"]),
            status=map_status(subscription.get("status")),
            product_id=product_id,
            price_id=price_id,
            plan_tier=self.tier_for_product(product_id),
            plan_name=self.plan_name(price_id),
            billing_cycle=self.billing_cycle(price_id),
            current_period_start=parse_datetime(period.get("starts_at")) or now,
            current_period_ends=parse_datetime(period.get("ends_at")),
            started_at=parse_datetime(subscription.get("started_at")) or now,
            cancel_at_period_end=scheduled.get("action") == "cancel",
            canceled_at=parse_datetime(subscription.get("canceled_at")),
            next_payment_date=parse_datetime(subscription.get("next_billed_at")),
            updated_at=now,
        )

        if previous is not None and previous.product_id and (
            previous.product_id != snapshot.product_id
            or previous.price_id != snapshot.price_id
        ):
            snapshot.previous_product_id = previous.product_id
            snapshot.previous_price_id = previous.price_id
            snapshot.previous_plan_tier = previous.plan_tier
            snapshot.previous_billing_cycle = previous.billing_cycle
            snapshot.subscription_changed_at = now

        return snapshot

    # -------- 결제 분류 --------

    def analyze_purchase(
        self,
        *,
        origin: str | None,
        product_id: str | None,
        price_id: str | None,
        quantity: int,
        existing: SubscriptionSnapshot | None,
    ) -> PurchaseAnalysis:
        if self.is_addon_price(price_id):
            credits = self.credits_for_price(price_id, quantity)
            return PurchaseAnalysis(
                kind=PurchaseKind.ADDON,
                credits_to_add=credits,
                previous_tier=None,
                new_tier=None,
                reason=f"Add-on purchase x{max(quantity, 1)}",
            )

        new_tier = self.tier_for_product(product_id)
        new_credits = self.credits_for_price(price_id)

        if origin == "subscription_recurring":
            return PurchaseAnalysis(
                kind=PurchaseKind.RENEWAL,
                credits_to_add=new_credits,
                previous_tier=new_tier,
                new_tier=new_tier,
                reason="Subscription renewal - full credits",
            )

        has_markers = existing is not None and existing.has_previous_markers

        if origin == "subscription_update":
            previous_product = None
            if existing is not None:
                previous_product = (
                    existing.previous_product_id if has_markers else existing.product_id
                )
            if not previous_product:
                return self._new_subscription(new_tier, new_credits, "update without previous state")
            if previous_product == product_id:
                return PurchaseAnalysis(
                    kind=PurchaseKind.BILLING_CYCLE_CHANGE,
                    credits_to_add=0,
                    previous_tier=new_tier,
                    new_tier=new_tier,
                    reason="Billing cycle change on same product - no credits",
                )
            return self._compare_tiers(previous_product, product_id)

        if origin in ("web", "subscription_charge"):
            if not has_markers:
                return self._new_subscription(new_tier, new_credits, f"checkout ({origin})")
            assert existing is not None
            previous_tier = self.tier_for_product(existing.previous_product_id)
            if self.tier_level(new_tier) > self.tier_level(previous_tier):
                return self._upgrade(existing.previous_product_id, product_id)
            # 같은 티어/하위 티어를 다시 결제한 경우: 새로 결제했으므로 전액
            return self._new_subscription(new_tier, new_credits, f"re-subscription via checkout ({origin})")

        if (
            existing is None
            or not existing.product_id
            or existing.status == SubscriptionStatus.CANCELED
        ):
            return self._new_subscription(new_tier, new_credits, "no active subscription")

        if existing.product_id == product_id:
            return PurchaseAnalysis(
                kind=PurchaseKind.BILLING_CYCLE_CHANGE,
                credits_to_add=0,
                previous_tier=existing.plan_tier,
                new_tier=new_tier,
                reason=f"Same product (origin: {origin}) - no credits",
            )
        return self._compare_tiers(existing.product_id, product_id)

    def _new_subscription(
        self, new_tier: str | None, credits: int, why: str
    ) -> PurchaseAnalysis:
        return PurchaseAnalysis(
            kind=PurchaseKind.NEW_SUBSCRIPTION,
            credits_to_add=credits,
            previous_tier=None,
            new_tier=new_tier,
            reason=f"New subscription - full credits ({why})",
        )

    def _upgrade(
        self, previous_product: str | None, new_product: str | None
    ) -> PurchaseAnalysis:
        previous_tier = self.tier_for_product(previous_product)
        new_tier = self.tier_for_product(new_product)
        difference = max(
            0,
            self.monthly_credits_for_product(new_product)
            - self.monthly_credits_for_product(previous_product),
        )
        return PurchaseAnalysis(
            kind=PurchaseKind.UPGRADE,
            credits_to_add=difference,
            previous_tier=previous_tier,
            new_tier=new_tier,
            reason=f"Upgrade from {previous_tier} to {new_tier} - {difference} credits difference",
        )

    def _compare_tiers(
        self, previous_product: str | None, new_product: str | None
    ) -> PurchaseAnalysis:
        previous_tier = self.tier_for_product(previous_product)
        new_tier = self.tier_for_product(new_product)
        previous_level = self.tier_level(previous_tier)
        new_level = self.tier_level(new_tier)

        if new_level > previous_level:
            return self._upgrade(previous_product, new_product)
        if new_level < previous_level:
            return PurchaseAnalysis(
                kind=PurchaseKind.DOWNGRADE,
                credits_to_add=0,
                previous_tier=previous_tier,
                new_tier=new_tier,
                reason=f"Downgrade from {previous_tier} to {new_tier} - no credits",
            )
        return PurchaseAnalysis(
            kind=PurchaseKind.BILLING_CYCLE_CHANGE,
            credits_to_add=0,
            previous_tier=previous_tier,
            new_tier=new_tier,
            reason="Same tier level - no credits",
        )
