from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from common.retry import RetryPolicy
from credit_service.app.exceptions import (
    CreditValidationError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransactionTypeError,
    StorageUnavailableError,
    UserNotFoundError,
)
from credit_service.app.models.balance import (
    BillingCycle,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from credit_service.app.models.ledger import (
    LedgerFilter,
    TransactionDirection,
    TransactionSource,
    TransactionType,
)
from credit_service.app.services.credit_service import generate_transaction_ref
from credit_service.tests.fakes import (
    PRO_ANNUAL_PRICE,
    PRO_PRODUCT,
    CreditFixture,
    FakeClock,
    build_credit_fixture,
)


def _seeded(credits: int = 0, user_id: str = "user-1") -> CreditFixture:
    fx = build_credit_fixture()
    fx.balance_repo.seed(user_id)
    if credits:
        fx.service.add_credits(
            user_id,
            credits,
            TransactionType.BONUS,
            "초기 지급",
            TransactionSource.ADMIN,
        )
    return fx


def _assert_ledger_consistent(fx: CreditFixture, user_id: str = "user-1") -> None:
    balance = fx.balance_repo.get(user_id)
    assert balance is not None
    assert balance.credits >= 0
    assert balance.credits == fx.ledger_repo.sum_completed(user_id)
    for entry in fx.ledger_repo.entries:
        assert entry.balance_after == entry.balance_before + entry.amount


def test_generate_transaction_ref_format() -> None:
    ref = generate_transaction_ref()

    prefix, stamp, suffix = ref.split("_")
    assert prefix == "txn"
    assert stamp.isalnum() and stamp == stamp.lower()
    assert len(suffix) == 8
    int(suffix, 16)


def test_add_credits_records_entry_and_balance() -> None:
    fx = _seeded()

    result = fx.service.add_credits(
        "user-1",
        1000,
        TransactionType.BONUS,
        "가입 보너스",
        TransactionSource.ADMIN,
    )

    assert result.balance_before == 0
    assert result.balance_after == 1000
    assert result.amount == 1000
    assert result.replayed is False
    assert fx.service.get_balance("user-1").credits == 1000
    _assert_ledger_consistent(fx)


def test_add_credits_with_same_idempotency_key_applies_once() -> None:
    fx = _seeded()

    first = fx.service.add_credits(
        "user-1",
        10000,
        TransactionType.SUBSCRIPTION_CREDIT,
        "Pro subscription",
        TransactionSource.WEBHOOK,
        idempotency_key="paddle:txn_1",
    )
    second = fx.service.add_credits(
        "user-1",
        10000,
        TransactionType.SUBSCRIPTION_CREDIT,
        "Pro subscription",
        TransactionSource.WEBHOOK,
        idempotency_key="paddle:txn_1",
    )

    assert second.replayed is True
    assert second.transaction_ref == first.transaction_ref
    assert second.balance_after == first.balance_after
    assert fx.service.get_balance("user-1").credits == 10000
    assert len(fx.ledger_repo.entries) == 1


def test_idempotency_key_race_inside_transaction_is_replayed() -> None:
    fx = _seeded()
    fx.service.add_credits(
        "user-1",
        100,
        TransactionType.BONUS,
        "보너스",
        TransactionSource.ADMIN,
        idempotency_key="bonus:1",
    )
    # 사전 조회를 통과한 뒤 저장소의 유니크 제약에 걸린 상황
    original_find = fx.ledger_repo.find_by_idempotency_key
    calls: list[str] = []

    def _miss_first(key: str):
        calls.append(key)
        if len(calls) == 1:
            return None
        return original_find(key)

    fx.ledger_repo.find_by_idempotency_key = _miss_first  # type: ignore[method-assign]

    result = fx.service.add_credits(
        "user-1",
        100,
        TransactionType.BONUS,
        "보너스",
        TransactionSource.ADMIN,
        idempotency_key="bonus:1",
    )

    assert result.replayed is True
    assert fx.service.get_balance("user-1").credits == 100
    assert len(fx.ledger_repo.entries) == 1


def test_idempotency_key_of_another_user_is_rejected() -> None:
    fx = _seeded()
    fx.balance_repo.seed("user-2")
    fx.service.add_credits(
        "user-1",
        100,
        TransactionType.BONUS,
        "보너스",
        TransactionSource.ADMIN,
        idempotency_key="bonus:1",
    )

    with pytest.raises(CreditValidationError):
        fx.service.add_credits(
            "user-2",
            100,
            TransactionType.BONUS,
            "보너스",
            TransactionSource.ADMIN,
            idempotency_key="bonus:1",
        )

    assert fx.service.get_balance("user-2").credits == 0
    assert len(fx.ledger_repo.entries) == 1


@pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10"])
def test_invalid_amounts_are_rejected_without_writes(amount) -> None:
    fx = _seeded(100)

    with pytest.raises(InvalidAmountError):
        fx.service.add_credits(
            "user-1", amount, TransactionType.BONUS, "x", TransactionSource.ADMIN
        )
    with pytest.raises(InvalidAmountError):
        fx.service.deduct_credits("user-1", amount, "x")

    assert len(fx.ledger_repo.entries) == 1
    assert fx.service.get_balance("user-1").credits == 100


def test_add_credits_rejects_debit_types() -> None:
    fx = _seeded()

    with pytest.raises(InvalidTransactionTypeError):
        fx.service.add_credits(
            "user-1", 10, TransactionType.USAGE_DEDUCTION, "x", TransactionSource.ADMIN
        )
    with pytest.raises(InvalidTransactionTypeError):
        fx.service.add_credits(
            "user-1", 10, TransactionType.REFUND, "x", TransactionSource.ADMIN
        )


def test_operations_on_unknown_user_raise_not_found() -> None:
    fx = build_credit_fixture()

    with pytest.raises(UserNotFoundError):
        fx.service.add_credits(
            "ghost", 10, TransactionType.BONUS, "x", TransactionSource.ADMIN
        )
    with pytest.raises(UserNotFoundError):
        fx.service.get_balance("ghost")
    assert fx.service.has_sufficient_balance("ghost", 1) is False
    assert fx.ledger_repo.entries == []


def test_deduct_more_than_balance_is_rejected() -> None:
    fx = _seeded(100)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        fx.service.deduct_credits("user-1", 101, "Image generation")

    assert exc_info.value.balance == 100
    assert exc_info.value.required == 101
    assert fx.service.get_balance("user-1").credits == 100
    assert len(fx.ledger_repo.entries) == 1


def test_deduct_exact_balance_reaches_zero() -> None:
    fx = _seeded(100)

    result = fx.service.deduct_credits("user-1", 100, "Video generation")

    assert result.amount == -100
    assert result.balance_after == 0
    _assert_ledger_consistent(fx)


def test_concurrent_deductions_conflict_and_retry_without_overdraw() -> None:
    fx = build_credit_fixture(
        serialize=False,
        retry_policy=RetryPolicy(max_attempts=5, jitter=lambda _: 0.0, sleep=lambda _: None),
    )
    fx.balance_repo.seed("user-1")
    fx.service.add_credits(
        "user-1", 1000, TransactionType.BONUS, "초기 지급", TransactionSource.ADMIN
    )
    workers = 4
    barrier = threading.Barrier(workers, timeout=5)
    waited: set[int] = set()
    successes: list[int] = []
    failures: list[Exception] = []
    lock = threading.Lock()

    def _read_together(user_id: str) -> None:
        # 모든 스레드가 같은 잔액(1000)을 읽은 뒤에야 첫 compare_and_set 을 시도한다
        with lock:
            first = threading.get_ident() not in waited
            waited.add(threading.get_ident())
        if first:
            barrier.wait()

    fx.balance_repo.before_cas = _read_together

    def _worker() -> None:
        try:
            fx.service.deduct_credits("user-1", 300, "Image generation")
        except InsufficientBalanceError as exc:
            with lock:
                failures.append(exc)
        else:
            with lock:
                successes.append(1)

    threads = [threading.Thread(target=_worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(successes) == 3
    assert len(failures) == 1
    # 첫 라운드에서 한 스레드만 이기고 나머지는 충돌 후 다시 시도했다
    assert fx.runner.rollbacks >= workers - 1
    assert fx.runner.attempts > 1 + workers
    assert fx.service.get_balance("user-1").credits == 100
    deductions = [e for e in fx.ledger_repo.entries if e.type == TransactionType.USAGE_DEDUCTION]
    assert [e.balance_before for e in deductions] == [1000, 700, 400]
    _assert_ledger_consistent(fx)


def test_balance_conflict_is_retried() -> None:
    fx = _seeded(500)
    conflicts = {"remaining": 1}

    def _concurrent_writer(user_id: str) -> None:
        # 첫 시도에서만 다른 쓰기가 끼어든 것처럼 잔액을 바꾼다
        if conflicts["remaining"]:
            conflicts["remaining"] -= 1
            current = fx.balance_repo.balances[user_id]
            fx.balance_repo.balances[user_id] = current.model_copy(
                update={"credits": current.credits + 1}
            )

    fx.balance_repo.before_cas = _concurrent_writer
    attempts_before = fx.runner.attempts

    result = fx.service.deduct_credits("user-1", 200, "Image generation")

    assert fx.runner.attempts - attempts_before == 2
    assert fx.runner.rollbacks == 1
    assert result.balance_after == 300
    _assert_ledger_consistent(fx)


def test_persistent_conflict_surfaces_storage_unavailable_and_rolls_back() -> None:
    fx = _seeded(500)

    def _always_conflict(user_id: str) -> None:
        current = fx.balance_repo.balances[user_id]
        fx.balance_repo.balances[user_id] = current.model_copy(
            update={"credits": current.credits + 1}
        )

    fx.balance_repo.before_cas = _always_conflict

    with pytest.raises(StorageUnavailableError):
        fx.service.deduct_credits("user-1", 200, "Image generation")

    fx.balance_repo.before_cas = None
    assert fx.service.get_balance("user-1").credits == 500
    assert len(fx.ledger_repo.entries) == 1
    _assert_ledger_consistent(fx)


def test_refund_is_applied_at_most_once() -> None:
    fx = _seeded(1000)
    debit = fx.service.deduct_credits("user-1", 400, "Image generation")

    first = fx.service.refund_credits("user-1", 400, "Refund", debit.transaction_ref)
    second = fx.service.refund_credits("user-1", 400, "Refund", debit.transaction_ref)

    assert first.replayed is False
    assert second.replayed is True
    assert second.transaction_ref == first.transaction_ref
    assert fx.service.get_balance("user-1").credits == 1000
    refunds = [e for e in fx.ledger_repo.entries if e.type == TransactionType.REFUND]
    assert len(refunds) == 1
    assert refunds[0].related_transaction_ref == debit.transaction_ref
    _assert_ledger_consistent(fx)


def test_refund_rejects_unknown_or_foreign_target() -> None:
    fx = _seeded(1000)
    fx.balance_repo.seed("user-2")
    debit = fx.service.deduct_credits("user-1", 100, "Image generation")

    with pytest.raises(CreditValidationError):
        fx.service.refund_credits("user-1", 100, "Refund", "txn_missing")
    with pytest.raises(CreditValidationError):
        fx.service.refund_credits("user-2", 100, "Refund", debit.transaction_ref)


def test_refund_cannot_exceed_original_debit() -> None:
    fx = _seeded(1000)
    debit = fx.service.deduct_credits("user-1", 100, "Image generation")

    with pytest.raises(InvalidAmountError):
        fx.service.refund_credits("user-1", 150, "Refund", debit.transaction_ref)

    credit_entry = fx.ledger_repo.entries[0]
    with pytest.raises(InvalidAmountError):
        fx.service.refund_credits("user-1", 10, "Refund", credit_entry.transaction_ref)


def test_reserve_and_refund_scenario_ends_with_consistent_ledger() -> None:
    fx = _seeded()
    fx.service.add_credits(
        "user-1", 500, TransactionType.BONUS, "초기", TransactionSource.ADMIN
    )
    debit = fx.service.deduct_credits("user-1", 200, "Image generation")
    fx.service.refund_credits("user-1", 200, "Refund", debit.transaction_ref)
    fx.service.deduct_credits("user-1", 150, "Video generation")

    with pytest.raises(InsufficientBalanceError):
        fx.service.deduct_credits("user-1", 400, "Video generation")

    assert fx.service.get_balance("user-1").credits == 350
    assert [e.amount for e in fx.ledger_repo.entries] == [500, -200, 200, -150]
    assert fx.service.verify_balance("user-1").is_valid is True
    _assert_ledger_consistent(fx)


def test_verify_and_repair_balance() -> None:
    fx = _seeded(300)
    # 캐시만 어긋난 상태
    current = fx.balance_repo.balances["user-1"]
    fx.balance_repo.balances["user-1"] = current.model_copy(update={"credits": 450})

    verification = fx.service.verify_balance("user-1")
    assert verification.is_valid is False
    assert verification.stored_balance == 450
    assert verification.calculated_balance == 300
    assert verification.discrepancy == 150

    repaired = fx.service.repair_balance("user-1")
    assert repaired.discrepancy == 150
    assert fx.service.get_balance("user-1").credits == 300
    assert fx.service.verify_balance("user-1").is_valid is True

    again = fx.service.repair_balance("user-1")
    assert again.is_valid is True
    assert len(fx.ledger_repo.entries) == 1


def _annual_snapshot(fx: CreditFixture, **overrides) -> SubscriptionSnapshot:
    now = fx.clock()
    data = dict(
        id="sub_annual",
        status=SubscriptionStatus.ACTIVE,
        product_id=PRO_PRODUCT,
        price_id=PRO_ANNUAL_PRICE,
        plan_tier="pro",
        plan_name="Pro",
        billing_cycle=BillingCycle.ANNUAL,
        current_period_start=now - timedelta(days=70),
        current_period_ends=now + timedelta(days=295),
        next_credit_date=now - timedelta(days=40),
        last_credit_date=now - timedelta(days=70),
    )
    data.update(overrides)
    return SubscriptionSnapshot(**data)


def test_monthly_credits_catch_up_missed_months() -> None:
    fx = build_credit_fixture()
    fx.balance_repo.seed("user-1", subscription=_annual_snapshot(fx))

    granted = fx.service.process_monthly_credits("user-1")

    # now-40d, now-10d 두 번 밀려 있었다
    assert granted == 8000
    assert fx.service.get_balance("user-1").credits == 8000
    sub = fx.balance_repo.get("user-1").subscription
    assert sub.next_credit_date == fx.clock() + timedelta(days=20)
    assert sub.last_credit_date == fx.clock()
    keys = [e.idempotency_key for e in fx.ledger_repo.entries]
    assert all(key.startswith("monthly_credit:user-1:") for key in keys)
    assert len(set(keys)) == 2

    assert fx.service.process_monthly_credits("user-1") == 0
    assert fx.service.get_balance("user-1").credits == 8000
    _assert_ledger_consistent(fx)


def test_monthly_credits_skip_ineligible_subscriptions() -> None:
    fx = build_credit_fixture()
    fx.balance_repo.seed(
        "monthly",
        subscription=_annual_snapshot(fx, billing_cycle=BillingCycle.MONTHLY),
    )
    fx.balance_repo.seed(
        "canceled",
        subscription=_annual_snapshot(fx, status=SubscriptionStatus.CANCELED),
    )
    fx.balance_repo.seed(
        "expired",
        subscription=_annual_snapshot(fx, current_period_ends=fx.clock() - timedelta(days=1)),
    )
    fx.balance_repo.seed("no-sub")

    for user_id in ("monthly", "canceled", "expired", "no-sub", "ghost"):
        assert fx.service.process_monthly_credits(user_id) == 0
    assert fx.ledger_repo.entries == []


def test_monthly_credit_replay_is_not_counted() -> None:
    fx = build_credit_fixture()
    fx.balance_repo.seed(
        "user-1",
        subscription=_annual_snapshot(fx, next_credit_date=fx.clock() - timedelta(days=1)),
    )
    period = (fx.clock() - timedelta(days=1)).isoformat()
    fx.service.add_credits(
        "user-1",
        4000,
        TransactionType.SUBSCRIPTION_CREDIT,
        "Monthly credits",
        TransactionSource.SYSTEM,
        idempotency_key=f"monthly_credit:user-1:{period}",
    )

    assert fx.service.process_monthly_credits("user-1") == 0
    assert fx.service.get_balance("user-1").credits == 4000
    # 일정은 그래도 전진한다
    sub = fx.balance_repo.get("user-1").subscription
    assert sub.next_credit_date == fx.clock() + timedelta(days=29)


def test_transaction_history_filters_and_paging() -> None:
    clock = FakeClock()
    fx = build_credit_fixture(clock)
    fx.balance_repo.seed("user-1")
    fx.service.add_credits(
        "user-1", 1000, TransactionType.BONUS, "Welcome bonus", TransactionSource.ADMIN
    )
    for i in range(5):
        clock.advance(minutes=1)
        fx.service.deduct_credits("user-1", 10, f"Image generation #{i}")

    page = fx.service.get_transaction_history(
        "user-1", LedgerFilter(direction=TransactionDirection.DEBIT, page=1, page_size=2)
    )
    assert page.total == 5
    assert len(page.items) == 2
    assert page.has_more is True
    assert page.items[0].description == "Image generation #4"
    assert page.summary.total_debited == 50
    assert page.summary.total_credited == 0
    assert page.summary.net_change == -50

    last = fx.service.get_transaction_history(
        "user-1", LedgerFilter(direction=TransactionDirection.DEBIT, page=3, page_size=2)
    )
    assert len(last.items) == 1
    assert last.has_more is False

    searched = fx.service.get_transaction_history(
        "user-1", LedgerFilter(search="welcome")
    )
    assert [e.type for e in searched.items] == [TransactionType.BONUS]


def test_transaction_history_clamps_paging() -> None:
    fx = _seeded(10)

    page = fx.service.get_transaction_history(
        "user-1", LedgerFilter(page=0, page_size=1000)
    )

    assert page.page == 1
    assert page.page_size == 20


def test_usage_summary_groups_by_type_and_day() -> None:
    clock = FakeClock()
    fx = build_credit_fixture(clock)
    fx.balance_repo.seed("user-1")
    fx.service.add_credits(
        "user-1", 1000, TransactionType.BONUS, "bonus", TransactionSource.ADMIN
    )
    debit = fx.service.deduct_credits("user-1", 300, "Image generation")
    clock.advance(days=1)
    fx.service.refund_credits("user-1", 300, "Refund", debit.transaction_ref)
    fx.service.deduct_credits("user-1", 100, "Image generation")

    summary = fx.service.get_usage_summary("user-1", days=30)

    assert summary.total_credits == 900
    assert summary.total_added == 1000
    assert summary.total_used == 400
    assert summary.total_refunded == 300
    assert summary.by_type == {"bonus": 1000, "usage_deduction": -400, "refund": 300}
    assert [(d.date, d.used, d.added) for d in summary.daily_usage] == [
        ("2025-03-01", 300, 1000),
        ("2025-03-02", 100, 300),
    ]
