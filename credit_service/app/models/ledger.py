"""크레딧 원장 도메인 모델.

원장 엔트리는 한 번 기록되면 변경되지 않는 부호 있는 거래 기록이며, 잔액의 진실 공급원이다.
각 엔트리의 balance_after 는 balance_before + amount 이고,
한 유저의 completed 엔트리 amount 합계는 가장 최근 엔트리의 balance_after 와 같아야 한다.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class TransactionType(StrEnum):
    SUBSCRIPTION_CREDIT = "subscription_credit"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    ADDON_PURCHASE = "addon_purchase"
    USAGE_DEDUCTION = "usage_deduction"
    REFUND = "refund"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    BONUS = "bonus"
    EXPIRY = "expiry"
    ROLLBACK = "rollback"
    SYNC_ADJUSTMENT = "sync_adjustment"


# add_credits 로 기록할 수 있는 (양수) 타입
CREDIT_TYPES: frozenset[TransactionType] = frozenset(
    {
        TransactionType.SUBSCRIPTION_CREDIT,
        TransactionType.SUBSCRIPTION_RENEWAL,
        TransactionType.ADDON_PURCHASE,
        TransactionType.MANUAL_ADJUSTMENT,
        TransactionType.BONUS,
        TransactionType.SYNC_ADJUSTMENT,
    }
)


class TransactionStatus(StrEnum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    REVERSED = "reversed"


class TransactionSource(StrEnum):
    WEBHOOK = "webhook"
    API = "api"
    SYSTEM = "system"
    ADMIN = "admin"
    SYNC = "sync"


class TransactionDirection(StrEnum):
    CREDIT = "credit"
    DEBIT = "debit"


class UsageDetails(BaseModel):
    """차감 사유 정보 (표시용)."""

    operation_type: str | None = None
    model_id: str | None = None
    quality: str | None = None
    generation_id: str | None = None


class LedgerEntry(BaseModel):
    id: str | None = None
    user_id: str
    transaction_ref: str
    idempotency_key: str | None = None
    type: TransactionType
    amount: int  # 양수 = 적립, 음수 = 차감
    balance_before: int
    balance_after: int
    status: TransactionStatus = TransactionStatus.COMPLETED
    source: TransactionSource
    description: str
    related_transaction_ref: str | None = None
    usage_details: UsageDetails | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    # 결제사 연동 정보 (결제로 적립된 엔트리에만 채워진다)
    provider_transaction_id: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    price_id: str | None = None
    product_id: str | None = None
    created_at: datetime
    updated_at: datetime


class ProviderReference(BaseModel):
    """결제사 거래에서 비롯된 적립일 때 함께 남기는 식별자 묶음."""

    transaction_id: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    price_id: str | None = None
    product_id: str | None = None


class CreditOperationResult(BaseModel):
    """잔액 변경 연산의 공통 결과.

    replayed=True 이면 멱등성 키/환불 대상 중복으로 인해 새로 기록하지 않고
    이전에 적용된 결과를 돌려준 것이다.
    """

    transaction_ref: str
    balance_before: int
    balance_after: int
    amount: int
    replayed: bool = False

    @classmethod
    def from_entry(cls, entry: LedgerEntry, *, replayed: bool = False) -> "CreditOperationResult":
        return cls(
            transaction_ref=entry.transaction_ref,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            amount=entry.amount,
            replayed=replayed,
        )


class BalanceVerification(BaseModel):
    user_id: str
    is_valid: bool
    stored_balance: int
    calculated_balance: int
    discrepancy: int  # stored - calculated


class LedgerFilter(BaseModel):
    """원장 조회 필터."""

    type: TransactionType | None = None
    direction: TransactionDirection | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = None
    page: int = 1
    page_size: int = 20


class LedgerSummary(BaseModel):
    """필터링된 엔트리 전체에 대한 집계."""

    total_credited: int = 0
    total_debited: int = 0  # 양수로 표기
    net_change: int = 0


class LedgerPage(BaseModel):
    items: list[LedgerEntry]
    total: int
    page: int
    page_size: int
    has_more: bool
    summary: LedgerSummary


class DailyUsage(BaseModel):
    date: str  # YYYY-MM-DD (UTC)
    used: int
    added: int


class UsageSummary(BaseModel):
    user_id: str
    days: int
    total_credits: int
    total_used: int
    total_added: int
    total_refunded: int
    by_type: dict[str, int]
    daily_usage: list[DailyUsage]
