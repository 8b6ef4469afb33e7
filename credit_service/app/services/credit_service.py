"""크레딧 서비스.

유저 잔액을 변경할 수 있는 유일한 경로다. 모든 변경은 하나의 원자 단위 안에서
잔액 조회 -> 새 잔액 계산 -> 원장 엔트리 추가 -> 조건부 잔액 쓰기 순서로 처리한다.

- 멱등성 키가 이미 존재하면 이전 결과를 그대로 돌려준다 (replayed=True).
- 같은 거래에 대한 환불은 한 번만 기록된다.
- 일시적 저장소 오류는 트랜잭션 실행기가 재시도한다.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from fastapi import Depends
from pymongo.database import Database

from common.mongo.client import get_database
from common.mongo.types import utc_now
from common.retry import RetryPolicy

from ..billing.plans import PlanCatalog
from ..config import CreditsConfig, RetryConfig, get_app_config
from ..exceptions import (
    BalanceConflictError,
    CreditValidationError,
    DuplicateIdempotencyKeyError,
    DuplicateRefundError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransactionTypeError,
    UserNotFoundError,
)
from ..models.balance import BillingCycle, UserBalance
from ..models.ledger import (
    CREDIT_TYPES,
    BalanceVerification,
    CreditOperationResult,
    DailyUsage,
    LedgerEntry,
    LedgerFilter,
    LedgerPage,
    ProviderReference,
    TransactionSource,
    TransactionType,
    UsageDetails,
    UsageSummary,
)
from ..repositories.balance_repository import BalanceRepository
from ..repositories.interfaces import (
    BalanceRepositoryInterface,
    LedgerRepositoryInterface,
    TransactionRunnerInterface,
)
from ..repositories.ledger_repository import LedgerRepository, normalize_paging
from ..repositories.transaction_runner import MongoTransactionRunner


logger = logging.getLogger(__name__)

# 한 번의 호출에서 밀린 월 지급을 따라잡는 최대 횟수
MAX_MONTHLY_CATCH_UP = 12

_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_transaction_ref() -> str:
    """txn_<base36 ms 타임스탬프>_<uuid4 앞 8자리>."""
    millis = int(time.time() * 1000)
    return f"txn_{_to_base36(millis)}_{uuid4().hex[:8]}"


def _validate_amount(amount: Any) -> int:
    # bool 은 int 의 하위 타입이므로 따로 걸러낸다
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidAmountError(f"amount must be positive, got {amount}")
    return amount


def _replay_for(prior: LedgerEntry, user_id: str) -> CreditOperationResult:
    # 멱등성 키는 전역으로 유일하므로 다른 사용자의 결과를 돌려주지 않는다
    if prior.user_id != user_id:
        raise CreditValidationError(
            f"idempotency key {prior.idempotency_key} was used by another user"
        )
    return CreditOperationResult.from_entry(prior, replayed=True)


class CreditService:
    """잔액/원장 변경과 조회를 담당하는 비즈니스 로직."""

    def __init__(
        self,
        ledger_repo: LedgerRepositoryInterface,
        balance_repo: BalanceRepositoryInterface,
        transaction_runner: TransactionRunnerInterface,
        plan_catalog: PlanCatalog,
        credits_config: CreditsConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        ref_factory: Callable[[], str] = generate_transaction_ref,
    ) -> None:
        self._ledger_repo = ledger_repo
        self._balance_repo = balance_repo
        self._tx = transaction_runner
        self._catalog = plan_catalog
        self._credits_config = credits_config or CreditsConfig()
        self._clock = clock
        self._ref_factory = ref_factory

    # -------- 계정/잔액 조회 --------

    def ensure_account(self, user_id: str, email: str | None = None) -> UserBalance:
        return self._balance_repo.ensure(user_id, email=email)

    def get_balance(self, user_id: str) -> UserBalance:
        balance = self._balance_repo.get(user_id)
        if balance is None:
            raise UserNotFoundError(user_id)
        return balance

    def has_sufficient_balance(self, user_id: str, amount: int) -> bool:
        balance = self._balance_repo.get(user_id)
        return balance is not None and balance.credits >= amount

    def is_refunded(self, transaction_ref: str) -> bool:
        return self._ledger_repo.find_refund_for(transaction_ref) is not None

    # -------- 변경 연산 --------

    def add_credits(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        source: TransactionSource,
        *,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
        related_transaction_ref: str | None = None,
        provider: ProviderReference | None = None,
    ) -> CreditOperationResult:
        amount = _validate_amount(amount)
        if type not in CREDIT_TYPES:
            raise InvalidTransactionTypeError(f"{type} cannot be used to add credits")

        return self._apply(
            user_id=user_id,
            amount=amount,
            type=type,
            description=description,
            source=source,
            idempotency_key=idempotency_key,
            metadata=metadata,
            related_transaction_ref=related_transaction_ref,
            provider=provider,
        )

    def deduct_credits(
        self,
        user_id: str,
        amount: int,
        description: str,
        *,
        usage_details: UsageDetails | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
        source: TransactionSource = TransactionSource.API,
    ) -> CreditOperationResult:
        """크레딧 차감. 잔액 확인과 쓰기가 같은 원자 단위 안에서 일어난다."""
        amount = _validate_amount(amount)
        return self._apply(
            user_id=user_id,
            amount=-amount,
            type=TransactionType.USAGE_DEDUCTION,
            description=description,
            source=source,
            idempotency_key=idempotency_key,
            metadata=metadata,
            usage_details=usage_details,
        )

    def refund_credits(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_transaction_ref: str,
        *,
        source: TransactionSource = TransactionSource.SYSTEM,
        metadata: dict[str, Any] | None = None,
    ) -> CreditOperationResult:
        """related_transaction_ref 에 대한 환불. 같은 대상에 두 번 호출해도 한 번만 적립된다."""
        amount = _validate_amount(amount)
        if not related_transaction_ref:
            raise CreditValidationError("refund requires related_transaction_ref")

        existing = self._ledger_repo.find_refund_for(related_transaction_ref)
        if existing is not None:
            logger.info(
                "refund already applied for %s",
                related_transaction_ref,
                extra={"user_id": user_id, "transaction_ref": existing.transaction_ref},
            )
            return CreditOperationResult.from_entry(existing, replayed=True)

        original = self._ledger_repo.find_by_transaction_ref(related_transaction_ref)
        if original is None or original.user_id != user_id:
            raise CreditValidationError(
                f"refund target not found for user {user_id}: {related_transaction_ref}"
            )
        if original.amount >= 0 or amount > -original.amount:
            raise InvalidAmountError(
                f"refund of {amount} exceeds debit {original.amount} of {related_transaction_ref}"
            )

        return self._apply(
            user_id=user_id,
            amount=amount,
            type=TransactionType.REFUND,
            description=description,
            source=source,
            idempotency_key=None,
            metadata=metadata,
            related_transaction_ref=related_transaction_ref,
        )

    def _apply(
        self,
        *,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        source: TransactionSource,
        idempotency_key: str | None,
        metadata: dict[str, Any] | None,
        related_transaction_ref: str | None = None,
        usage_details: UsageDetails | None = None,
        provider: ProviderReference | None = None,
    ) -> CreditOperationResult:
        if idempotency_key:
            prior = self._ledger_repo.find_by_idempotency_key(idempotency_key)
            if prior is not None:
                logger.info(
                    "idempotent replay for key %s",
                    idempotency_key,
                    extra={"user_id": user_id, "transaction_ref": prior.transaction_ref},
                )
                return _replay_for(prior, user_id)

        provider = provider or ProviderReference()

        def _unit(session: Any) -> LedgerEntry:
            balance = self._balance_repo.get(user_id, session=session)
            if balance is None:
                raise UserNotFoundError(user_id)

            balance_before = balance.credits
            balance_after = balance_before + amount
            if balance_after < 0:
                raise InsufficientBalanceError(user_id, balance_before, -amount)

            now = self._clock()
            entry = LedgerEntry(
                user_id=user_id,
                transaction_ref=self._ref_factory(),
                idempotency_key=idempotency_key,
                type=type,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
                source=source,
                description=description,
                related_transaction_ref=related_transaction_ref,
                usage_details=usage_details,
                metadata=dict(metadata or {}),
                provider_transaction_id=provider.transaction_id,
                subscription_id=provider.subscription_id,
                customer_id=provider.customer_id,
                price_id=provider.price_id,
                product_id=provider.product_id,
                created_at=now,
                updated_at=now,
            )
            saved = self._ledger_repo.append(entry, session=session)

            if not self._balance_repo.compare_and_set_credits(
                user_id,
                balance_before,
                balance_after,
                verified_at=now,
                session=session,
            ):
                raise BalanceConflictError(
                    f"balance for {user_id} changed during update (expected {balance_before})"
                )
            return saved

        try:
            entry = self._tx.run(_unit)
        except DuplicateIdempotencyKeyError:
            prior = self._ledger_repo.find_by_idempotency_key(idempotency_key or "")
            if prior is None:
                raise
            return _replay_for(prior, user_id)
        except DuplicateRefundError:
            prior = self._ledger_repo.find_refund_for(related_transaction_ref or "")
            if prior is None:
                raise
            return CreditOperationResult.from_entry(prior, replayed=True)

        logger.info(
            "ledger entry recorded: %s %+d (%d -> %d)",
            entry.type,
            entry.amount,
            entry.balance_before,
            entry.balance_after,
            extra={"user_id": user_id, "transaction_ref": entry.transaction_ref},
        )
        return CreditOperationResult.from_entry(entry)

    # -------- 정합성 --------

    def verify_balance(self, user_id: str) -> BalanceVerification:
        """원장 합계와 캐시된 잔액을 비교한다. 아무것도 변경하지 않는다."""
        balance = self.get_balance(user_id)
        calculated = self._ledger_repo.sum_completed(user_id)
        discrepancy = balance.credits - calculated
        return BalanceVerification(
            user_id=user_id,
            is_valid=discrepancy == 0,
            stored_balance=balance.credits,
            calculated_balance=calculated,
            discrepancy=discrepancy,
        )

    def repair_balance(self, user_id: str) -> BalanceVerification:
        """캐시된 잔액을 원장 합계로 덮어쓴다. 이미 일치하면 아무것도 하지 않는다.

        반환값은 수정 전 상태의 검증 결과다.
        """

        def _unit(session: Any) -> BalanceVerification:
            balance = self._balance_repo.get(user_id, session=session)
            if balance is None:
                raise UserNotFoundError(user_id)
            calculated = self._ledger_repo.sum_completed(user_id, session=session)
            discrepancy = balance.credits - calculated
            if discrepancy != 0 and not self._balance_repo.compare_and_set_credits(
                user_id,
                balance.credits,
                calculated,
                verified_at=self._clock(),
                session=session,
            ):
                raise BalanceConflictError(f"balance for {user_id} changed during repair")
            return BalanceVerification(
                user_id=user_id,
                is_valid=discrepancy == 0,
                stored_balance=balance.credits,
                calculated_balance=calculated,
                discrepancy=discrepancy,
            )

        result = self._tx.run(_unit)
        if not result.is_valid:
            logger.warning(
                "balance repaired from %d to %d",
                result.stored_balance,
                result.calculated_balance,
                extra={"user_id": user_id},
            )
        return result

    # -------- 연간 플랜 월별 지급 --------

    def process_monthly_credits(self, user_id: str) -> int:
        """연간 구독자의 이번 달 크레딧을 지급한다. 새로 지급한 크레딧 합계를 반환한다.

        매 조회마다 호출해도 안전하다. 지급 여부는 기간별 멱등성 키로 판별하고,
        next_credit_date 는 읽은 값이 그대로일 때만 전진시킨다.
        """
        balance = self._balance_repo.get(user_id)
        if balance is None or balance.subscription is None:
            return 0

        sub = balance.subscription
        if (
            not sub.is_active
            or sub.billing_cycle != BillingCycle.ANNUAL
            or sub.next_credit_date is None
        ):
            return 0

        now = self._clock()
        if sub.current_period_ends is not None and sub.current_period_ends <= now:
            return 0

        monthly = self._catalog.monthly_credits_for_product(sub.product_id)
        if monthly <= 0:
            logger.warning(
                "no monthly credits configured for product %s",
                sub.product_id,
                extra={"user_id": user_id},
            )
            return 0

        interval = timedelta(days=self._credits_config.monthly_credit_interval_days)
        credit_date = sub.next_credit_date
        granted = 0

        for _ in range(MAX_MONTHLY_CATCH_UP):
            if credit_date > now:
                break
            if sub.current_period_ends is not None and credit_date >= sub.current_period_ends:
                break

            period = credit_date.isoformat()
            result = self.add_credits(
                user_id,
                monthly,
                TransactionType.SUBSCRIPTION_CREDIT,
                f"Monthly credits: {sub.plan_name or sub.plan_tier} ({credit_date:%Y-%m-%d})",
                TransactionSource.SYSTEM,
                idempotency_key=f"monthly_credit:{user_id}:{period}",
                metadata={
                    "credit_period": period,
                    "billing_cycle": str(BillingCycle.ANNUAL),
                    "subscription_id": sub.id,
                },
            )
            if not result.replayed:
                granted += monthly

            following = credit_date + interval
            if not self._balance_repo.advance_credit_schedule(
                user_id, credit_date, following, now
            ):
                # 다른 요청이 먼저 일정을 전진시켰다
                break
            credit_date = following

        if granted:
            logger.info(
                "granted %d monthly credits",
                granted,
                extra={"user_id": user_id},
            )
        return granted

    # -------- 이력/통계 --------

    def get_transaction_history(self, user_id: str, flt: LedgerFilter) -> LedgerPage:
        page, page_size = normalize_paging(flt.page, flt.page_size)
        flt = flt.model_copy(update={"page": page, "page_size": page_size})

        items, total = self._ledger_repo.list_by_user(user_id, flt)
        summary = self._ledger_repo.summarize(user_id, flt)
        return LedgerPage(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            has_more=page * page_size < total,
            summary=summary,
        )

    def get_usage_summary(self, user_id: str, days: int = 30) -> UsageSummary:
        balance = self.get_balance(user_id)
        since = self._clock() - timedelta(days=days)
        entries = self._ledger_repo.list_since(user_id, since)

        by_type: dict[str, int] = defaultdict(int)
        used_by_day: dict[str, int] = defaultdict(int)
        added_by_day: dict[str, int] = defaultdict(int)
        for entry in entries:
            by_type[str(entry.type)] += entry.amount
            day = entry.created_at.strftime("%Y-%m-%d")
            if entry.amount < 0:
                used_by_day[day] += -entry.amount
            else:
                added_by_day[day] += entry.amount

        total_used = 0
        total_added = 0
        total_refunded = 0
        for type_name, total in by_type.items():
            if total < 0:
                total_used += -total
            elif type_name == TransactionType.REFUND:
                total_refunded += total
            else:
                total_added += total

        daily_usage = [
            DailyUsage(date=day, used=used_by_day.get(day, 0), added=added_by_day.get(day, 0))
            for day in sorted(set(used_by_day) | set(added_by_day))
        ]
        return UsageSummary(
            user_id=user_id,
            days=days,
            total_credits=balance.credits,
            total_used=total_used,
            total_added=total_added,
            total_refunded=total_refunded,
            by_type=dict(by_type),
            daily_usage=daily_usage,
        )


def build_retry_policy(config: RetryConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.max_attempts,
        base_delay=config.base_delay_seconds,
        max_delay=config.max_delay_seconds,
    )


def get_plan_catalog() -> PlanCatalog:
    """FastAPI DI용 PlanCatalog 팩토리."""

    return PlanCatalog(get_app_config().billing)


def get_ledger_repository(
    db: Database = Depends(get_database),
) -> LedgerRepositoryInterface:
    """FastAPI DI용 LedgerRepository 팩토리."""

    return LedgerRepository(db)


def get_balance_repository(
    db: Database = Depends(get_database),
) -> BalanceRepositoryInterface:
    """FastAPI DI용 BalanceRepository 팩토리."""

    return BalanceRepository(db)


def get_transaction_runner(
    db: Database = Depends(get_database),
) -> TransactionRunnerInterface:
    return MongoTransactionRunner(
        db.client, build_retry_policy(get_app_config().credits.retry)
    )


def get_credit_service(
    ledger_repo: LedgerRepositoryInterface = Depends(get_ledger_repository),
    balance_repo: BalanceRepositoryInterface = Depends(get_balance_repository),
    transaction_runner: TransactionRunnerInterface = Depends(get_transaction_runner),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
) -> CreditService:
    """FastAPI DI용 CreditService 팩토리."""

    return CreditService(
        ledger_repo=ledger_repo,
        balance_repo=balance_repo,
        transaction_runner=transaction_runner,
        plan_catalog=plan_catalog,
        credits_config=get_app_config().credits,
    )
