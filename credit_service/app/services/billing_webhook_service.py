"""Paddle 웹훅 처리.

결제사는 최소 한 번(at-least-once) 전달하므로 모든 핸들러는 재전달에 대해 멱등해야 한다.
크레딧 적립은 ``paddle:<transaction id>`` 멱등성 키로 보호되고, 구독 스냅샷 갱신은 같은 값을
다시 쓰는 것이라 재전달돼도 결과가 같다.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from fastapi import Depends

from common.mongo.types import utc_now

from ..billing.payloads import custom_user_id, first_item, map_status, parse_datetime
from ..billing.plans import PlanCatalog, PurchaseKind
from ..billing.signature import DEFAULT_TOLERANCE_SECONDS, verify_signature
from ..config import get_app_config, load_paddle_settings
from ..exceptions import CreditValidationError, WebhookUserNotFoundError
from ..models.balance import BillingCycle, SubscriptionStatus, UserBalance
from ..models.ledger import ProviderReference, TransactionSource, TransactionType
from ..repositories.interfaces import BalanceRepositoryInterface
from .credit_service import (
    CreditService,
    get_balance_repository,
    get_credit_service,
    get_plan_catalog,
)
from .reconciliation_service import provider_idempotency_key


logger = logging.getLogger(__name__)


class WebhookEventType:
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    TRANSACTION_COMPLETED = "transaction.completed"
    TRANSACTION_PAYMENT_FAILED = "transaction.payment_failed"


PREVIOUS_MARKER_FIELDS = (
    "previous_product_id",
    "previous_price_id",
    "previous_plan_tier",
    "previous_billing_cycle",
    "subscription_changed_at",
)

_PURCHASE_TRANSACTION_TYPES: dict[PurchaseKind, TransactionType] = {
    PurchaseKind.RENEWAL: TransactionType.SUBSCRIPTION_RENEWAL,
    PurchaseKind.ADDON: TransactionType.ADDON_PURCHASE,
}


@dataclass(slots=True)
class WebhookOutcome:
    event_id: str | None
    event_type: str
    handled: bool


class BillingWebhookService:
    def __init__(
        self,
        credit_service: CreditService,
        balance_repo: BalanceRepositoryInterface,
        plan_catalog: PlanCatalog,
        webhook_secret: str | None,
        *,
        monthly_credit_interval_days: int = 30,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credits = credit_service
        self._balance_repo = balance_repo
        self._catalog = plan_catalog
        self._secret = webhook_secret
        self._interval = timedelta(days=monthly_credit_interval_days)
        self._tolerance_seconds = tolerance_seconds
        self._clock = clock

        self._handlers: dict[str, Callable[[Mapping[str, Any]], None]] = {
            WebhookEventType.SUBSCRIPTION_CREATED: self._on_subscription_created,
            WebhookEventType.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            WebhookEventType.SUBSCRIPTION_CANCELED: self._on_subscription_canceled,
            WebhookEventType.SUBSCRIPTION_ACTIVATED: self._on_subscription_activated,
            WebhookEventType.SUBSCRIPTION_PAUSED: self._on_subscription_paused,
            WebhookEventType.SUBSCRIPTION_RESUMED: self._on_subscription_resumed,
            WebhookEventType.TRANSACTION_COMPLETED: self._on_transaction_completed,
            WebhookEventType.TRANSACTION_PAYMENT_FAILED: self._on_payment_failed,
        }

    def handle(self, raw_body: bytes, signature_header: str | None) -> WebhookOutcome:
        """서명을 검증한 뒤 이벤트를 처리한다. 서명/설정 오류는 예외로 올린다."""
        verify_signature(
            raw_body,
            signature_header,
            self._secret,
            tolerance_seconds=self._tolerance_seconds,
            now=self._clock().timestamp(),
        )
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise CreditValidationError("webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise CreditValidationError("webhook body must be a JSON object")
        return self.dispatch(payload)

    def dispatch(self, payload: Mapping[str, Any]) -> WebhookOutcome:
        event_type = str(payload.get("event_type") or "")
        event_id = payload.get("event_id")
        data = payload.get("data") or {}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(
                "ignoring unhandled webhook event %s",
                event_id,
                extra={"event_type": event_type},
            )
            return WebhookOutcome(event_id=event_id, event_type=event_type, handled=False)

        logger.info("processing webhook event %s", event_id, extra={"event_type": event_type})
        handler(data)
        return WebhookOutcome(event_id=event_id, event_type=event_type, handled=True)

    # -------- 유저 매칭 --------

    def _find_user(
        self,
        data: Mapping[str, Any],
        subscription_id: str | None,
        *,
        create: bool = False,
    ) -> UserBalance | None:
        """custom_data.user_id -> 구독 ID -> 고객 ID 순서로 유저를 찾는다."""
        user_id = custom_user_id(data)
        if user_id:
            if create:
                return self._credits.ensure_account(user_id)
            balance = self._balance_repo.get(user_id)
            if balance is not None:
                return balance

        if subscription_id:
            balance = self._balance_repo.find_by_subscription_id(subscription_id)
            if balance is not None:
                return balance

        customer_id = data.get("customer_id")
        if customer_id:
            return self._balance_repo.find_by_customer_id(str(customer_id))
        return None

    # -------- 구독 이벤트 --------

    def _on_subscription_created(self, data: Mapping[str, Any]) -> None:
        subscription_id = str(data["id"])
        balance = self._find_user(data, subscription_id, create=True)
        if balance is None:
            logger.warning("no user for subscription.created %s", subscription_id)
            return
        self._replace_snapshot(balance, data)

    def _replace_snapshot(self, balance: UserBalance, data: Mapping[str, Any]) -> None:
        now = self._clock()
        snapshot = self._catalog.build_snapshot(data, now=now, previous=balance.subscription)
        if snapshot.billing_cycle == BillingCycle.ANNUAL:
            # 첫 달 크레딧은 결제(transaction.completed)로 지급된다
            snapshot.next_credit_date = now + self._interval
            snapshot.last_credit_date = now

        customer_id = data.get("customer_id")
        self._balance_repo.replace_subscription(
            balance.user_id, snapshot, str(customer_id) if customer_id else None
        )
        logger.info(
            "subscription snapshot stored (%s, %s)",
            snapshot.id,
            snapshot.plan_tier,
            extra={"user_id": balance.user_id},
        )

    def _on_subscription_updated(self, data: Mapping[str, Any]) -> None:
        subscription_id = str(data["id"])
        balance = self._find_user(data, subscription_id)
        if balance is None:
            logger.warning("no user for subscription.updated %s", subscription_id)
            return

        local = balance.subscription
        if local is None or local.id != subscription_id:
            self._replace_snapshot(balance, data)
            return

        now = self._clock()
        price_id, product_id, _ = first_item(data)
        updates: dict[str, Any] = {"status": map_status(data.get("status"))}

        changed = (product_id and local.product_id and product_id != local.product_id) or (
            price_id and local.price_id and price_id != local.price_id
        )
        # 마커는 처음 기록한 값을 유지한다 (같은 웹훅이 두 번 와도 덮어쓰지 않음)
        if changed and not local.has_previous_markers:
            updates.update(
                previous_product_id=local.product_id,
                previous_price_id=local.price_id,
                previous_plan_tier=local.plan_tier,
                previous_billing_cycle=local.billing_cycle or BillingCycle.MONTHLY,
                subscription_changed_at=now,
            )
            logger.info(
                "plan change detected: %s -> %s",
                local.product_id,
                product_id,
                extra={"user_id": balance.user_id},
            )

        if price_id:
            cycle = self._catalog.billing_cycle(price_id)
            updates.update(
                price_id=price_id,
                billing_cycle=cycle,
                plan_name=self._catalog.plan_name(price_id),
            )
            if cycle == BillingCycle.ANNUAL and local.next_credit_date is None:
                updates.update(next_credit_date=now + self._interval, last_credit_date=now)
        if product_id:
            updates.update(
                product_id=product_id,
                plan_tier=self._catalog.tier_for_product(product_id),
            )

        period = data.get("current_billing_period") or {}
        starts_at = parse_datetime(period.get("starts_at"))
        ends_at = parse_datetime(period.get("ends_at"))
        if starts_at is not None:
            updates["current_period_start"] = starts_at
        if ends_at is not None:
            updates["current_period_ends"] = ends_at

        next_billed_at = parse_datetime(data.get("next_billed_at"))
        if next_billed_at is not None:
            updates["next_payment_date"] = next_billed_at

        scheduled = data.get("scheduled_change") or {}
        updates["cancel_at_period_end"] = scheduled.get("action") == "cancel"

        self._balance_repo.update_subscription(balance.user_id, _to_mongo_values(updates))

    def _set_status(
        self,
        data: Mapping[str, Any],
        event_type: str,
        updates: dict[str, Any],
    ) -> None:
        subscription_id = str(data["id"])
        balance = self._find_user(data, subscription_id)
        if balance is None:
            logger.warning(
                "no user for subscription %s",
                subscription_id,
                extra={"event_type": event_type},
            )
            return
        if not self._balance_repo.update_subscription(
            balance.user_id, _to_mongo_values(updates)
        ):
            logger.warning(
                "user has no subscription snapshot to update",
                extra={"user_id": balance.user_id, "event_type": event_type},
            )

    def _on_subscription_canceled(self, data: Mapping[str, Any]) -> None:
        self._set_status(
            data,
            WebhookEventType.SUBSCRIPTION_CANCELED,
            {
                "status": SubscriptionStatus.CANCELED,
                "cancel_at_period_end": True,
                "canceled_at": parse_datetime(data.get("canceled_at")) or self._clock(),
            },
        )

    def _on_subscription_activated(self, data: Mapping[str, Any]) -> None:
        self._set_status(
            data,
            WebhookEventType.SUBSCRIPTION_ACTIVATED,
            {"status": SubscriptionStatus.ACTIVE, "cancel_at_period_end": False},
        )

    def _on_subscription_paused(self, data: Mapping[str, Any]) -> None:
        self._set_status(
            data,
            WebhookEventType.SUBSCRIPTION_PAUSED,
            {"status": SubscriptionStatus.PAUSED},
        )

    def _on_subscription_resumed(self, data: Mapping[str, Any]) -> None:
        self._set_status(
            data,
            WebhookEventType.SUBSCRIPTION_RESUMED,
            {"status": SubscriptionStatus.ACTIVE},
        )

    # -------- 결제 이벤트 --------

    def _on_transaction_completed(self, data: Mapping[str, Any]) -> None:
        transaction_id = str(data["id"])
        subscription_id = data.get("subscription_id")
        customer_id = data.get("customer_id")

        balance = self._find_user(data, subscription_id, create=bool(custom_user_id(data)))
        if balance is None:
            # 500 을 돌려 결제사가 재전달하게 한다 (subscription.created 보다 먼저 도착한 경우 등)
            raise WebhookUserNotFoundError(
                f"User not found for transaction {transaction_id}"
            )

        price_id, product_id, quantity = first_item(data)
        analysis = self._catalog.analyze_purchase(
            origin=data.get("origin"),
            product_id=product_id,
            price_id=price_id,
            quantity=quantity,
            existing=balance.subscription,
        )
        logger.info(
            "transaction %s classified as %s: %s",
            transaction_id,
            analysis.kind,
            analysis.reason,
            extra={"user_id": balance.user_id},
        )

        if analysis.credits_to_add > 0:
            self._credits.add_credits(
                balance.user_id,
                analysis.credits_to_add,
                _PURCHASE_TRANSACTION_TYPES.get(
                    analysis.kind, TransactionType.SUBSCRIPTION_CREDIT
                ),
                f"{self._catalog.plan_name(price_id)}: {analysis.reason}",
                TransactionSource.WEBHOOK,
                idempotency_key=provider_idempotency_key(transaction_id),
                metadata={
                    "purchase_kind": str(analysis.kind),
                    "origin": data.get("origin"),
                    "previous_tier": analysis.previous_tier,
                    "new_tier": analysis.new_tier,
                },
                provider=ProviderReference(
                    transaction_id=transaction_id,
                    subscription_id=str(subscription_id) if subscription_id else None,
                    customer_id=str(customer_id) if customer_id else None,
                    price_id=price_id,
                    product_id=product_id,
                ),
            )

        if customer_id and not balance.customer_id:
            self._balance_repo.set_customer_id(balance.user_id, str(customer_id))

        if analysis.kind == PurchaseKind.ADDON or not subscription_id:
            return

        sub = balance.subscription
        if sub is not None and sub.id == subscription_id:
            billed_at = parse_datetime(data.get("billed_at")) or self._clock()
            self._balance_repo.update_subscription(
                balance.user_id,
                {"transaction_id": transaction_id, "last_payment_date": billed_at},
                unset=PREVIOUS_MARKER_FIELDS,
            )

    def _on_payment_failed(self, data: Mapping[str, Any]) -> None:
        subscription_id = data.get("subscription_id")
        if not subscription_id:
            return
        balance = self._find_user(data, str(subscription_id))
        if balance is None:
            logger.warning("no user for failed payment on %s", subscription_id)
            return
        self._balance_repo.update_subscription(
            balance.user_id, {"status": str(SubscriptionStatus.PAST_DUE)}
        )
        logger.warning(
            "payment failed, subscription marked past_due",
            extra={"user_id": balance.user_id},
        )


def _to_mongo_values(updates: dict[str, Any]) -> dict[str, Any]:
    # StrEnum 값은 일반 문자열로 저장한다
    return {
        key: str(value) if isinstance(value, (SubscriptionStatus, BillingCycle)) else value
        for key, value in updates.items()
    }


def get_billing_webhook_service(
    credit_service: CreditService = Depends(get_credit_service),
    balance_repo: BalanceRepositoryInterface = Depends(get_balance_repository),
    plan_catalog: PlanCatalog = Depends(get_plan_catalog),
) -> BillingWebhookService:
    """FastAPI DI용 BillingWebhookService 팩토리."""

    return BillingWebhookService(
        credit_service=credit_service,
        balance_repo=balance_repo,
        plan_catalog=plan_catalog,
        webhook_secret=load_paddle_settings().webhook_secret,
        monthly_credit_interval_days=get_app_config().credits.monthly_credit_interval_days,
    )
