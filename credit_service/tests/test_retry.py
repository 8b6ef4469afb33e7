from __future__ import annotations

import pytest
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure

from common.retry import RetryExhaustedError, RetryPolicy
from credit_service.app.exceptions import BalanceConflictError, InsufficientBalanceError
from credit_service.app.repositories.transaction_runner import is_transient_storage_error


def _policy(sleeps: list[float], max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay=0.1,
        max_delay=0.3,
        jitter=lambda _: 0.0,
        sleep=sleeps.append,
    )


def test_retry_succeeds_after_transient_failures() -> None:
    sleeps: list[float] = []
    calls = {"n": 0}

    def _flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise BalanceConflictError("conflict")
        return "ok"

    result = _policy(sleeps).call(_flaky, retry_on=is_transient_storage_error)

    assert result == "ok"
    assert calls["n"] == 3
    assert sleeps == [0.1, 0.2]


def test_retry_gives_up_after_max_attempts() -> None:
    sleeps: list[float] = []

    def _always_fail() -> None:
        raise AutoReconnect("primary stepped down")

    with pytest.raises(RetryExhaustedError) as exc_info:
        _policy(sleeps).call(_always_fail, retry_on=is_transient_storage_error)

    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, AutoReconnect)
    assert len(sleeps) == 2


def test_non_transient_error_is_raised_immediately() -> None:
    sleeps: list[float] = []
    calls = {"n": 0}

    def _business_error() -> None:
        calls["n"] += 1
        raise InsufficientBalanceError("user-1", 0, 10)

    with pytest.raises(InsufficientBalanceError):
        _policy(sleeps).call(_business_error, retry_on=is_transient_storage_error)

    assert calls["n"] == 1
    assert sleeps == []


def test_delay_is_capped_by_max_delay() -> None:
    policy = _policy([])

    assert policy.delay_for(1) == pytest.approx(0.1)
    assert policy.delay_for(5) == pytest.approx(0.3)


def test_invalid_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=-1)


def test_transient_error_classification() -> None:
    labeled = OperationFailure(
        "transaction aborted",
        code=251,
        details={"errorLabels": ["TransientTransactionError"]},
    )

    assert is_transient_storage_error(BalanceConflictError("x")) is True
    assert is_transient_storage_error(AutoReconnect("x")) is True
    assert is_transient_storage_error(OperationFailure("conflict", code=112)) is True
    assert is_transient_storage_error(labeled) is True
    assert is_transient_storage_error(DuplicateKeyError("dup", code=11000)) is False
    assert is_transient_storage_error(ValueError("x")) is False
