"""결제사(Paddle) 기준 정합성 점검.

전용 스케줄러 없이 자주 호출되는 계정 조회 경로에서 실행된다. 웹훅이 누락되었을 가능성이 있을 때만
결제사를 조회해 구독 스냅샷을 갱신하고, 원장에 없는 결제를 멱등하게 재적립한다.

결제사 호출이 실패하면 캐시된 데이터를 그대로 쓰고 balance_verified_at 을 갱신하지 않아
다음 조회에서 다시 시도하게 한다.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Mapping

from fastapi import Depends

from common.mongo.types import utc_now

from ..billing.paddle_client import BillingProviderInterface, PaddleClient
from ..billing.payloads import first_item, parse_datetime
from ..billing.plans import PlanCatalog
from ..config import ReconciliationConfig, get_app_config, load_paddle_settings
from ..exceptions import BillingProviderError
from ..models.balance import BillingCycle, SubscriptionSnapshot, UserBalance
from ..models.ledger import (
    BalanceVerification,
    ProviderReference,
    TransactionSource,
    TransactionType,
)
from ..repositories.interfaces import (
    BalanceRepositoryInterface,
    LedgerRepositoryInterface,
)
from .credit_service import (
    CreditService,
    get_balance_repository,
    get_credit_service,
    get_ledger_repository,
    get_plan_catalog,
)


logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# 스냅샷 비교에서 제외하는 필드 (로컬에서만 관리하는 값)
_LOCAL_ONLY_FIELDS = {
    "updated_at",
    "next_credit_date",
    "last_credit_date",
    "transaction_id",
    "last_payment_date",
    "previous_product_id",
    "previous_price_id",
    "previous_plan_tier",
    "previous_billing_cycle",
    "subscription_changed_at",
}


def provider_idempotency_key(transaction_id: str) -> str:
    """웹훅과 정합성 점검이 공유하는 결제 거래 멱등성 키."""
    return f"paddle:{transaction_id}"


@dataclass(slots=True)
class ReconciliationResult:
    user_id: str
    synced: bool
    subscription_updated: bool = False
    credits_added: int = 0
    verification: BalanceVerification | None = None
    error: str | None = None


class ReconciliationService:
    def __init__(
        self,
        credit_service: CreditService,
        ledger_repo: LedgerRepositoryInterface,
        balance_repo: BalanceRepositoryInterface,
        provider: BillingProviderInterface,
        plan_catalog: PlanCatalog,
        config: ReconciliationConfig | None = None,
        monthly_credit_interval_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credits = credit_service
        self._ledger_repo = ledger_repo
        self._balance_repo = balance_repo
        self._provider = provider
        self._catalog = plan_catalog
        self._config = config or ReconciliationConfig()
        self._interval = timedelta(days=monthly_credit_interval_days)
        self._clock = clock

    def should_sync(self, balance: UserBalance) -> bool:
        """웹훅 누락 가능성이 있을 때만 True.

        1. 구독은 active 인데 잔액이 0이고 원장 이력이 전혀 없다.
        2. 마지막 검증이 오래되었고 결제사 고객 ID 가 있다.
        """
        sub = balance.subscription
        if (
            sub is not None
            and sub.is_active
            and balance.credits == 0
            and not self._ledger_repo.has_entries(balance.user_id)
        ):
            return True

        if balance.customer_id:
            verified_at = balance.balance_verified_at
            stale_before = self._clock() - timedelta(seconds=self._config.stale_after_seconds)
            if verified_at is None or verified_at < stale_before:
                return True

        return False

    def refresh_account(self, user_id: str, email: str | None = None) -> UserBalance:
        """계정 조회 경로: 계정 보장 -> (조건부) 결제사 동기화 -> 월별 지급 -> 최신 잔액."""
        balance = self._credits.ensure_account(user_id, email=email)
        if self.should_sync(balance):
            self.sync(user_id, email=email)
        self._credits.process_monthly_credits(user_id)
        return self._credits.get_balance(user_id)

    def sync(self, user_id: str, email: str | None = None) -> ReconciliationResult:
        balance = self._credits.get_balance(user_id)
        now = self._clock()
        result = ReconciliationResult(user_id=user_id, synced=False)

        try:
            customer_id = self._resolve_customer(balance, email)
            if customer_id is None:
                logger.info("no billing customer found", extra={"user_id": user_id})
                self._balance_repo.touch_verified(user_id, now)
                result.synced = True
                return result

            subscriptions = self._provider.list_active_subscriptions(customer_id)
            result.subscription_updated = self._sync_snapshot(
                balance, customer_id, subscriptions, now
            )
            for subscription in subscriptions:
                result.credits_added += self._replay_latest_transaction(
                    user_id, customer_id, subscription
                )
        except BillingProviderError as exc:
            logger.exception(
                "billing provider unavailable, using cached data",
                extra={"user_id": user_id},
            )
            result.error = str(exc)
            return result

        verification = self._credits.verify_balance(user_id)
        if not verification.is_valid:
            logger.warning(
                "balance discrepancy after sync: stored=%d calculated=%d",
                verification.stored_balance,
                verification.calculated_balance,
                extra={"user_id": user_id},
            )
        result.verification = verification

        self._balance_repo.touch_verified(user_id, now)
        result.synced = True
        logger.info(
            "billing sync finished (subscription_updated=%s credits_added=%d)",
            result.subscription_updated,
            result.credits_added,
            extra={"user_id": user_id},
        )
        return result

    def _resolve_customer(self, balance: UserBalance, email: str | None) -> str | None:
        if balance.customer_id:
            return balance.customer_id

        email = email or balance.email
        if not email:
            return None

        customer_id = self._provider.find_customer_id_by_email(email)
        if customer_id:
            self._balance_repo.set_customer_id(balance.user_id, customer_id)
        return customer_id

    def _sync_snapshot(
        self,
        balance: UserBalance,
        customer_id: str,
        subscriptions: list[dict[str, Any]],
        now: datetime,
    ) -> bool:
        """가장 최근에 시작된 구독으로 로컬 스냅샷을 맞춘다. 갱신했으면 True."""
        if not subscriptions:
            return False

        latest = max(
            subscriptions,
            key=lambda sub: parse_datetime(sub.get("started_at")) or _EPOCH,
        )
        local = balance.subscription

        if local is not None and local.updated_at is not None:
            fresh_after = now - timedelta(seconds=self._config.snapshot_fresh_seconds)
            if local.updated_at > fresh_after:
                # 방금 웹훅이 쓴 스냅샷은 덮어쓰지 않는다
                return False

        snapshot = self._catalog.build_snapshot(latest, now=now, previous=local)
        if local is not None and local.id == snapshot.id:
            # 같은 구독이면 로컬에서만 관리하는 일정/결제 정보를 유지한다
            snapshot.next_credit_date = local.next_credit_date
            snapshot.last_credit_date = local.last_credit_date
            snapshot.transaction_id = local.transaction_id
            snapshot.last_payment_date = local.last_payment_date
            if not snapshot.has_previous_markers and local.has_previous_markers:
                snapshot.previous_product_id = local.previous_product_id
                snapshot.previous_price_id = local.previous_price_id
                snapshot.previous_plan_tier = local.previous_plan_tier
                snapshot.previous_billing_cycle = local.previous_billing_cycle
                snapshot.subscription_changed_at = local.subscription_changed_at
        elif snapshot.billing_cycle == BillingCycle.ANNUAL:
            snapshot.next_credit_date = now + self._interval
            snapshot.last_credit_date = now

        if local is not None and _same_snapshot(local, snapshot):
            return False

        self._balance_repo.replace_subscription(balance.user_id, snapshot, customer_id)
        logger.info(
            "subscription snapshot replaced from provider (%s)",
            snapshot.id,
            extra={"user_id": balance.user_id},
        )
        return True

    def _replay_latest_transaction(
        self,
        user_id: str,
        customer_id: str,
        subscription: Mapping[str, Any],
    ) -> int:
        subscription_id = str(subscription["id"])
        transaction = self._provider.get_latest_transaction(subscription_id)
        if not transaction:
            return 0

        transaction_id = str(transaction["id"])
        key = provider_idempotency_key(transaction_id)
        if self._ledger_repo.exists_for_provider_transaction(transaction_id, key):
            return 0

        # 크레딧 0 으로 분류된 결제(다운그레이드, 결제 주기 변경)는 원장에 남지 않고
        # 스냅샷의 transaction_id 로만 처리 여부가 기록된다
        local = self._credits.get_balance(user_id).subscription
        if local is not None and local.transaction_id == transaction_id:
            return 0

        price_id, product_id, quantity = first_item(transaction)
        analysis = self._catalog.analyze_purchase(
            origin=transaction.get("origin"),
            product_id=product_id,
            price_id=price_id,
            quantity=quantity,
            existing=local,
        )
        if analysis.credits_to_add <= 0:
            logger.info(
                "provider transaction %s grants no credits (%s)",
                transaction_id,
                analysis.reason,
                extra={"user_id": user_id},
            )
            return 0

        credits = analysis.credits_to_add
        result = self._credits.add_credits(
            user_id,
            credits,
            TransactionType.SYNC_ADJUSTMENT,
            f"Paddle sync: {self._catalog.plan_name(price_id)} subscription",
            TransactionSource.SYNC,
            idempotency_key=key,
            related_transaction_ref=transaction_id,
            metadata={
                "sync_reason": "missed_webhook",
                "purchase_kind": str(analysis.kind),
                "original_status": transaction.get("status"),
            },
            provider=ProviderReference(
                transaction_id=transaction_id,
                subscription_id=subscription_id,
                customer_id=customer_id,
                price_id=price_id,
                product_id=product_id,
            ),
        )
        if result.replayed:
            return 0

        logger.warning(
            "recovered %d credits for missed provider transaction %s",
            credits,
            transaction_id,
            extra={"user_id": user_id, "transaction_ref": result.transaction_ref},
        )
        return credits


def _same_snapshot(local: SubscriptionSnapshot, remote: SubscriptionSnapshot) -> bool:
    return local.model_dump(exclude=_LOCAL_ONLY_FIELDS) == remote.model_dump(
        exclude=_LOCAL_ONLY_FIELDS
    )


def get_billing_provider() -> Iterator[BillingProviderInterface]:
    """FastAPI DI용 PaddleClient 팩토리. 요청이 끝나면 HTTP 커넥션을 닫는다."""

    client = PaddleClient.from_settings(load_paddle_settings())
    try:
        yield client
    finally:
        client.close()


def get_reconciliation_service(
    credit_service: CreditService = Depends(get_credit_service),
    ledger_repo: LedgerRepositoryInterface = Depends(get_ledger_repository),
    balance_repo: BalanceRepositoryInterface = Depends(get_balance_repository),
    provider: BillingProviderInterface = Depends(get_billing_provider),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
) -> ReconciliationService:
    """FastAPI DI용 ReconciliationService 팩토리."""

    credits_config = get_app_config().credits
    return ReconciliationService(
        credit_service=credit_service,
        ledger_repo=ledger_repo,
        balance_repo=balance_repo,
        provider=provider,
        plan_catalog=plan_catalog,
        config=credits_config.reconciliation,
        monthly_credit_interval_days=credits_config.monthly_credit_interval_days,
    )
