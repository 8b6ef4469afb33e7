from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import pytest

from credit_service.app.billing.signature import compute_signature
from credit_service.app.exceptions import (
    CreditValidationError,
    WebhookConfigurationError,
    WebhookSignatureError,
    WebhookUserNotFoundError,
)
from credit_service.app.models.balance import (
    BillingCycle,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from credit_service.app.models.ledger import TransactionSource, TransactionType
from credit_service.app.services.billing_webhook_service import BillingWebhookService
from credit_service.tests.fakes import (
    ADDON_PRICE,
    ADDON_PRODUCT,
    PRO_ANNUAL_PRICE,
    PRO_MONTHLY_PRICE,
    PRO_PRODUCT,
    ULTIMATE_MONTHLY_PRICE,
    ULTIMATE_PRODUCT,
    CreditFixture,
    build_credit_fixture,
    paddle_subscription,
    paddle_transaction,
)


SECRET = "pdl_ntfset_test_secret"


@dataclass
class WebhookFixture:
    service: BillingWebhookService
    credits: CreditFixture


def _build_fixture(secret: str | None = SECRET) -> WebhookFixture:
    credits = build_credit_fixture()
    service = BillingWebhookService(
        credit_service=credits.service,
        balance_repo=credits.balance_repo,
        plan_catalog=credits.catalog,
        webhook_secret=secret,
        clock=credits.clock,
    )
    return WebhookFixture(service=service, credits=credits)


def _event(event_type: str, data: dict[str, Any], event_id: str = "evt_01") -> dict[str, Any]:
    return {"event_id": event_id, "event_type": event_type, "data": data}


def _signed(fx: WebhookFixture, payload: dict[str, Any]) -> tuple[bytes, str]:
    raw_body = json.dumps(payload).encode("utf-8")
    ts = int(fx.credits.clock().timestamp())
    return raw_body, f"ts={ts};h1={compute_signature(SECRET, ts, raw_body)}"


def _seed_pro_user(fx: WebhookFixture) -> None:
    fx.credits.balance_repo.seed(
        "user-1",
        customer_id="ctm_01",
        subscription=SubscriptionSnapshot(
            id="sub_01",
            status=SubscriptionStatus.ACTIVE,
            product_id=PRO_PRODUCT,
            price_id=PRO_MONTHLY_PRICE,
            plan_tier="pro",
            plan_name="Pro",
            billing_cycle=BillingCycle.MONTHLY,
        ),
    )


def _balance(fx: WebhookFixture, user_id: str = "user-1") -> int:
    return fx.credits.service.get_balance(user_id).credits


def test_redelivered_transaction_credits_once() -> None:
    fx = _build_fixture()
    payload = _event(
        "transaction.completed",
        paddle_transaction(
            "tx_1",
            subscription_id=None,
            price_id=ADDON_PRICE,
            product_id=ADDON_PRODUCT,
            quantity=100,
            user_id="user-1",
        ),
    )
    raw_body, header = _signed(fx, payload)

    first = fx.service.handle(raw_body, header)
    second = fx.service.handle(raw_body, header)

    assert first.handled is True
    assert second.handled is True
    assert _balance(fx) == 10000
    entries = fx.credits.ledger_repo.entries
    assert len(entries) == 1
    assert entries[0].type == TransactionType.ADDON_PURCHASE
    assert entries[0].source == TransactionSource.WEBHOOK
    assert entries[0].idempotency_key == "paddle:tx_1"
    assert entries[0].provider_transaction_id == "tx_1"
    # 고객 ID 가 없던 계정은 결제에서 채운다
    assert fx.credits.balance_repo.get("user-1").customer_id == "ctm_01"


def test_invalid_signature_is_rejected_before_processing() -> None:
    fx = _build_fixture()
    payload = _event("transaction.completed", paddle_transaction("tx_1", user_id="user-1"))
    raw_body, header = _signed(fx, payload)

    with pytest.raises(WebhookSignatureError):
        fx.service.handle(raw_body + b" ", header)
    with pytest.raises(WebhookSignatureError):
        fx.service.handle(raw_body, None)

    assert fx.credits.ledger_repo.entries == []
    assert fx.credits.balance_repo.balances == {}


def test_missing_secret_is_configuration_error() -> None:
    fx = _build_fixture(secret=None)

    with pytest.raises(WebhookConfigurationError):
        fx.service.handle(b"{}", "ts=1;h1=abc")


def test_signed_body_must_be_json_object() -> None:
    fx = _build_fixture()
    raw_body = b"[1, 2]"
    ts = int(fx.credits.clock().timestamp())
    header = f"ts={ts};h1={compute_signature(SECRET, ts, raw_body)}"

    with pytest.raises(CreditValidationError):
        fx.service.handle(raw_body, header)


def test_unknown_event_is_acknowledged_but_not_handled() -> None:
    fx = _build_fixture()

    outcome = fx.service.dispatch(_event("customer.updated", {"id": "ctm_01"}))

    assert outcome.handled is False
    assert outcome.event_type == "customer.updated"


def test_new_subscription_checkout_grants_full_credits() -> None:
    fx = _build_fixture()

    fx.service.dispatch(
        _event("subscription.created", paddle_subscription("sub_01", user_id="user-1"))
    )
    fx.service.dispatch(
        _event("transaction.completed", paddle_transaction("tx_1", origin="web"))
    )

    assert _balance(fx) == 4000
    entry = fx.credits.ledger_repo.entries[0]
    assert entry.type == TransactionType.SUBSCRIPTION_CREDIT
    assert entry.subscription_id == "sub_01"
    balance = fx.credits.balance_repo.get("user-1")
    assert balance.customer_id == "ctm_01"
    assert balance.subscription.plan_tier == "pro"
    assert balance.subscription.transaction_id == "tx_1"


def test_annual_subscription_created_schedules_next_monthly_credit() -> None:
    fx = _build_fixture()
    now = fx.credits.clock()

    fx.service.dispatch(
        _event(
            "subscription.created",
            paddle_subscription("sub_01", price_id=PRO_ANNUAL_PRICE, user_id="user-1"),
        )
    )

    sub = fx.credits.balance_repo.get("user-1").subscription
    assert sub.billing_cycle == BillingCycle.ANNUAL
    assert sub.next_credit_date is not None
    assert sub.next_credit_date > now
    assert sub.last_credit_date == now


def test_upgrade_grants_difference_and_clears_markers() -> None:
    fx = _build_fixture()
    _seed_pro_user(fx)
    updated = _event(
        "subscription.updated",
        paddle_subscription(
            "sub_01", price_id=ULTIMATE_MONTHLY_PRICE, product_id=ULTIMATE_PRODUCT
        ),
    )

    fx.service.dispatch(updated)
    # 재전달돼도 처음 기록한 이전 플랜 마커는 유지된다
    fx.service.dispatch(updated)

    sub = fx.credits.balance_repo.get("user-1").subscription
    assert sub.plan_tier == "ultimate"
    assert sub.previous_product_id == PRO_PRODUCT
    assert sub.previous_plan_tier == "pro"

    fx.service.dispatch(
        _event(
            "transaction.completed",
            paddle_transaction(
                "tx_up",
                origin="subscription_update",
                price_id=ULTIMATE_MONTHLY_PRICE,
                product_id=ULTIMATE_PRODUCT,
            ),
        )
    )

    assert _balance(fx) == 4000
    sub = fx.credits.balance_repo.get("user-1").subscription
    assert sub.previous_product_id is None
    assert sub.previous_price_id is None
    assert sub.transaction_id == "tx_up"


def test_downgrade_grants_nothing() -> None:
    fx = _build_fixture()
    fx.credits.balance_repo.seed(
        "user-1",
        subscription=SubscriptionSnapshot(
            id="sub_01",
            status=SubscriptionStatus.ACTIVE,
            product_id=ULTIMATE_PRODUCT,
            price_id=ULTIMATE_MONTHLY_PRICE,
            plan_tier="ultimate",
        ),
    )

    fx.service.dispatch(
        _event(
            "transaction.completed",
            paddle_transaction("tx_down", origin="subscription_update"),
        )
    )

    assert _balance(fx) == 0
    assert fx.credits.ledger_repo.entries == []


def test_renewal_grants_full_credits_as_renewal() -> None:
    fx = _build_fixture()
    _seed_pro_user(fx)

    fx.service.dispatch(
        _event(
            "transaction.completed",
            paddle_transaction("tx_renew", origin="subscription_recurring"),
        )
    )

    assert _balance(fx) == 4000
    assert fx.credits.ledger_repo.entries[0].type == TransactionType.SUBSCRIPTION_RENEWAL


def test_transaction_for_unknown_user_requests_redelivery() -> None:
    fx = _build_fixture()

    with pytest.raises(WebhookUserNotFoundError):
        fx.service.dispatch(
            _event(
                "transaction.completed",
                paddle_transaction("tx_1", subscription_id="sub_missing", customer_id="ctm_x"),
            )
        )
    assert fx.credits.ledger_repo.entries == []


def test_status_events_update_snapshot() -> None:
    fx = _build_fixture()
    _seed_pro_user(fx)

    fx.service.dispatch(
        _event(
            "subscription.canceled",
            {"id": "sub_01", "canceled_at": "2025-03-01T10:00:00Z"},
        )
    )
    sub = fx.credits.balance_repo.get("user-1").subscription
    assert sub.status == SubscriptionStatus.CANCELED
    assert sub.cancel_at_period_end is True

    fx.service.dispatch(_event("subscription.activated", {"id": "sub_01"}))
    assert fx.credits.balance_repo.get("user-1").subscription.status == SubscriptionStatus.ACTIVE

    fx.service.dispatch(_event("subscription.paused", {"id": "sub_01"}))
    assert fx.credits.balance_repo.get("user-1").subscription.status == SubscriptionStatus.PAUSED

    fx.service.dispatch(_event("subscription.resumed", {"id": "sub_01"}))
    assert fx.credits.balance_repo.get("user-1").subscription.status == SubscriptionStatus.ACTIVE

    fx.service.dispatch(
        _event("transaction.payment_failed", {"id": "tx_f", "subscription_id": "sub_01"})
    )
    assert (
        fx.credits.balance_repo.get("user-1").subscription.status
        == SubscriptionStatus.PAST_DUE
    )
    assert fx.credits.ledger_repo.entries == []


def test_status_event_for_unknown_subscription_is_ignored() -> None:
    fx = _build_fixture()

    outcome = fx.service.dispatch(_event("subscription.paused", {"id": "sub_none"}))

    assert outcome.handled is True
    assert fx.credits.balance_repo.balances == {}
