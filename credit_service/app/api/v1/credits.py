"""크레딧 잔액/원장 조회 및 관리자 API 라우터.

Gateway 에서 호출하는 내부 API 다. 유저 인증은 Gateway 가 끝낸 뒤 user_id 를 넘긴다.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from common.mongo.types import ensure_optional_utc_datetime

from ...models.balance import UserBalance
from ...models.ledger import (
    BalanceVerification,
    CreditOperationResult,
    LedgerEntry,
    LedgerFilter,
    LedgerSummary,
    TransactionDirection,
    TransactionSource,
    TransactionType,
    UsageSummary,
)
from ...services.credit_service import CreditService, get_credit_service
from ...services.reconciliation_service import (
    ReconciliationService,
    get_reconciliation_service,
)
from ..schemas.common import PaginatedResponse


router = APIRouter(prefix="/credits", tags=["credits"])


# -------- Request / Response Schemas --------


class SubscriptionSummaryResponse(BaseModel):
    """계정 화면에 보여줄 구독 요약."""

    id: str
    status: str
    plan_tier: str | None
    plan_name: str | None
    billing_cycle: str | None
    current_period_ends: datetime | None
    cancel_at_period_end: bool
    next_payment_date: datetime | None
    next_credit_date: datetime | None


class AccountResponse(BaseModel):
    user_id: str
    credits: int
    customer_id: str | None
    subscription: SubscriptionSummaryResponse | None
    balance_verified_at: datetime | None


class BalanceResponse(BaseModel):
    user_id: str
    credits: int


class TransactionItemResponse(BaseModel):
    """원장 엔트리 응답."""

    transaction_ref: str
    type: str
    amount: int
    balance_before: int
    balance_after: int
    status: str
    source: str
    description: str
    related_transaction_ref: str | None
    created_at: datetime


class TransactionHistoryResponse(PaginatedResponse[TransactionItemResponse]):
    has_more: bool
    summary: LedgerSummary


class GrantRequest(BaseModel):
    """관리자 크레딧 부여 요청."""

    amount: int
    type: Literal["bonus", "manual_adjustment"] = "bonus"
    description: str
    idempotency_key: str | None = None


# -------- Helpers --------


def _to_account(balance: UserBalance) -> AccountResponse:
    sub = balance.subscription
    summary: SubscriptionSummaryResponse | None = None
    if sub is not None:
        summary = SubscriptionSummaryResponse(
            id=sub.id,
            status=str(sub.status),
            plan_tier=sub.plan_tier,
            plan_name=sub.plan_name,
            billing_cycle=str(sub.billing_cycle) if sub.billing_cycle else None,
            current_period_ends=sub.current_period_ends,
            cancel_at_period_end=sub.cancel_at_period_end,
            next_payment_date=sub.next_payment_date,
            next_credit_date=sub.next_credit_date,
        )
    return AccountResponse(
        user_id=balance.user_id,
        credits=balance.credits,
        customer_id=balance.customer_id,
        subscription=summary,
        balance_verified_at=balance.balance_verified_at,
    )


def _to_item(entry: LedgerEntry) -> TransactionItemResponse:
    return TransactionItemResponse(
        transaction_ref=entry.transaction_ref,
        type=str(entry.type),
        amount=entry.amount,
        balance_before=entry.balance_before,
        balance_after=entry.balance_after,
        status=str(entry.status),
        source=str(entry.source),
        description=entry.description,
        related_transaction_ref=entry.related_transaction_ref,
        created_at=entry.created_at,
    )


# -------- Endpoints --------


@router.get("/{user_id}/account")
def get_account(
    user_id: str,
    reconciliation: Annotated[ReconciliationService, Depends(get_reconciliation_service)],
    email: str | None = None,
) -> AccountResponse:
    """잔액 + 구독 요약. 필요하면 결제사 동기화와 월별 지급을 먼저 수행한다."""
    balance = reconciliation.refresh_account(user_id, email=email)
    return _to_account(balance)


@router.get("/{user_id}/balance")
def get_balance(
    user_id: str,
    credit_service: Annotated[CreditService, Depends(get_credit_service)],
) -> BalanceResponse:
    balance = credit_service.get_balance(user_id)
    return BalanceResponse(user_id=balance.user_id, credits=balance.credits)


@router.get("/{user_id}/transactions")
def get_transactions(
    user_id: str,
    credit_service: Annotated[CreditService, Depends(get_credit_service)],
    type: TransactionType | None = None,
    direction: TransactionDirection | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    search: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> TransactionHistoryResponse:
    """원장 이력 조회 (필터 + 필터 전체에 대한 합계)."""
    result = credit_service.get_transaction_history(
        user_id,
        LedgerFilter(
            type=type,
            direction=direction,
            start_date=ensure_optional_utc_datetime(start_date),
            end_date=ensure_optional_utc_datetime(end_date),
            search=search,
            page=page,
            page_size=page_size,
        ),
    )
    return TransactionHistoryResponse(
        items=[_to_item(entry) for entry in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        has_more=result.has_more,
        summary=result.summary,
    )


@router.get("/{user_id}/usage")
def get_usage(
    user_id: str,
    credit_service: Annotated[CreditService, Depends(get_credit_service)],
    days: Annotated[int, Query(ge=1, le=365)] = 30,
) -> UsageSummary:
    return credit_service.get_usage_summary(user_id, days=days)


@router.get("/{user_id}/verify")
def verify_balance(
    user_id: str,
    credit_service: Annotated[CreditService, Depends(get_credit_service)],
) -> BalanceVerification:
    """원장 합계와 캐시된 잔액 비교 (변경 없음)."""
    return credit_service.verify_balance(user_id)


@router.post("/{user_id}/repair")
def repair_balance(
    user_id: str,
    credit_service: Annotated[CreditService, Depends(get_credit_service)],
) -> BalanceVerification:
    """캐시된 잔액을 원장 합계로 맞춘다. 응답은 수정 전 검증 결과."""
    return credit_service.repair_balance(user_id)


@router.post("/{user_id}/grant")
def grant_credits(
    user_id: str,
    req: GrantRequest,
    credit_service: Annotated[CreditService, Depends(get_credit_service)],
) -> CreditOperationResult:
    """관리자/이벤트 크레딧 부여."""
    return credit_service.add_credits(
        user_id,
        req.amount,
        TransactionType(req.type),
        req.description,
        TransactionSource.ADMIN,
        idempotency_key=req.idempotency_key,
    )
