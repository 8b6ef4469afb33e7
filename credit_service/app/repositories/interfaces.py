from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, Protocol, TypeVar

from ..models.balance import SubscriptionSnapshot, UserBalance
from ..models.job import GenerationJob, JobStatus
from ..models.ledger import LedgerEntry, LedgerFilter, LedgerSummary


T = TypeVar("T")


class TransactionRunnerInterface(Protocol):
    """원자 단위(all-or-nothing) 실행기.

    callback 은 세션 객체를 받아 그 세션으로 저장소를 호출한다. callback 이 예외를 던지면
    그 안에서 일어난 쓰기는 모두 취소되어야 한다. 일시적 오류는 실행기가 재시도한다.
    """

    def run(self, callback: Callable[[Any], T]) -> T:  # pragma: no cover - Protocol
        ...


class LedgerRepositoryInterface(Protocol):
    """원장 저장소. 추가와 조회만 있고 completed 엔트리의 수정/삭제는 없다."""

    def append(
        self, entry: LedgerEntry, *, session: Any = None
    ) -> LedgerEntry:  # pragma: no cover - Protocol
        ...

    def find_by_transaction_ref(
        self, transaction_ref: str
    ) -> LedgerEntry | None:  # pragma: no cover - Protocol
        ...

    def find_by_idempotency_key(
        self, idempotency_key: str
    ) -> LedgerEntry | None:  # pragma: no cover - Protocol
        ...

    def find_refund_for(
        self, related_transaction_ref: str
    ) -> LedgerEntry | None:  # pragma: no cover - Protocol
        ...

    def exists_for_provider_transaction(
        self, provider_transaction_id: str, idempotency_key: str
    ) -> bool:  # pragma: no cover - Protocol
        ...

    def has_entries(self, user_id: str) -> bool:  # pragma: no cover - Protocol
        ...

    def sum_completed(
        self, user_id: str, *, session: Any = None
    ) -> int:  # pragma: no cover - Protocol
        ...

    def list_by_user(
        self, user_id: str, flt: LedgerFilter
    ) -> tuple[list[LedgerEntry], int]:  # pragma: no cover - Protocol
        ...

    def summarize(
        self, user_id: str, flt: LedgerFilter
    ) -> LedgerSummary:  # pragma: no cover - Protocol
        ...

    def list_since(
        self, user_id: str, since: datetime
    ) -> list[LedgerEntry]:  # pragma: no cover - Protocol
        ...


class BalanceRepositoryInterface(Protocol):
    """유저 잔액/구독 스냅샷 저장소. CreditService 와 결제 연동 서비스만 사용한다."""

    def get(
        self, user_id: str, *, session: Any = None
    ) -> UserBalance | None:  # pragma: no cover - Protocol
        ...

    def ensure(
        self, user_id: str, email: str | None = None
    ) -> UserBalance:  # pragma: no cover - Protocol
        ...

    def compare_and_set_credits(
        self,
        user_id: str,
        expected: int,
        new: int,
        *,
        verified_at: datetime,
        session: Any = None,
    ) -> bool:  # pragma: no cover - Protocol
        ...

    def find_by_subscription_id(
        self, subscription_id: str
    ) -> UserBalance | None:  # pragma: no cover - Protocol
        ...

    def find_by_customer_id(
        self, customer_id: str
    ) -> UserBalance | None:  # pragma: no cover - Protocol
        ...

    def set_customer_id(
        self, user_id: str, customer_id: str
    ) -> None:  # pragma: no cover - Protocol
        ...

    def replace_subscription(
        self, user_id: str, snapshot: SubscriptionSnapshot, customer_id: str | None
    ) -> None:  # pragma: no cover - Protocol
        ...

    def update_subscription(
        self,
        user_id: str,
        updates: dict[str, Any],
        unset: Iterable[str] = (),
    ) -> bool:  # pragma: no cover - Protocol
        ...

    def advance_credit_schedule(
        self,
        user_id: str,
        expected_next_credit_date: datetime,
        next_credit_date: datetime,
        last_credit_date: datetime,
    ) -> bool:  # pragma: no cover - Protocol
        ...

    def touch_verified(
        self, user_id: str, verified_at: datetime
    ) -> None:  # pragma: no cover - Protocol
        ...


class JobRepositoryInterface(Protocol):
    """생성 작업 저장소. 진행 반영과 종료 전이는 process_id 기준 원자적 갱신이다."""

    def insert(self, job: GenerationJob) -> GenerationJob:  # pragma: no cover - Protocol
        ...

    def find_by_process_id(
        self, process_id: str
    ) -> GenerationJob | None:  # pragma: no cover - Protocol
        ...

    def apply_progress(
        self,
        process_id: str,
        completed_outputs: list[dict[str, Any]],
        failed_count: int,
        total_expected: int | None,
    ) -> GenerationJob | None:  # pragma: no cover - Protocol
        ...

    def mark_terminal(
        self,
        process_id: str,
        status: JobStatus,
        *,
        error: str | None,
        result_payload: dict[str, Any] | None,
        completed_at: datetime,
    ) -> GenerationJob | None:  # pragma: no cover - Protocol
        ...

    def record_refund(
        self, process_id: str, amount: int, refund_ref: str
    ) -> None:  # pragma: no cover - Protocol
        ...

    def list_by_user(
        self, user_id: str, page: int, page_size: int
    ) -> tuple[list[GenerationJob], int]:  # pragma: no cover - Protocol
        ...
