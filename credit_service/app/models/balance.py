"""유저 잔액(비정규화 캐시)과 구독 스냅샷 도메인 모델.

credits 는 원장 합계의 캐시일 뿐이며, 원장과 어긋나면 원장이 이긴다.
이 레코드는 CreditService 를 통해서만 변경된다.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"


class BillingCycle(StrEnum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionSnapshot(BaseModel):
    """결제사 구독 상태의 로컬 캐시."""

    id: str
    status: SubscriptionStatus | str
    product_id: str | None = None
    price_id: str | None = None
    plan_tier: str | None = None
    plan_name: str | None = None
    billing_cycle: BillingCycle | None = None
    current_period_start: datetime | None = None
    current_period_ends: datetime | None = None
    started_at: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    next_payment_date: datetime | None = None
    # 연간 플랜의 월별 지급 일정
    next_credit_date: datetime | None = None
    last_credit_date: datetime | None = None
    # 마지막 결제 정보
    transaction_id: str | None = None
    last_payment_date: datetime | None = None
    # 플랜 변경 직전 상태 (transaction.completed 처리 후 지운다)
    previous_product_id: str | None = None
    previous_price_id: str | None = None
    previous_plan_tier: str | None = None
    previous_billing_cycle: BillingCycle | None = None
    subscription_changed_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_previous_markers(self) -> bool:
        return bool(self.previous_product_id or self.previous_price_id)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


class UserBalance(BaseModel):
    id: str | None = None
    user_id: str
    credits: int = 0
    email: str | None = None
    customer_id: str | None = None
    subscription: SubscriptionSnapshot | None = None
    balance_verified_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
