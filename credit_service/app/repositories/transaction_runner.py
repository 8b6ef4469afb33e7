"""MongoDB 멀티 도큐먼트 트랜잭션 실행기.

원장 엔트리 추가와 잔액 갱신을 한 트랜잭션으로 묶어, 둘 다 커밋되거나 둘 다 취소되도록 한다.
일시적 오류(연결 끊김, TransientTransactionError, 잔액 낙관적 잠금 충돌)는 RetryPolicy 로
지수 백오프 재시도하고, 재시도를 모두 소진하면 StorageUnavailableError 로 올린다.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from common.retry import RetryExhaustedError, RetryPolicy

from ..exceptions import BalanceConflictError, StorageUnavailableError
from .interfaces import TransactionRunnerInterface


logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_storage_error(exc: BaseException) -> bool:
    """재시도해도 안전한 저장소 오류인지 판별한다."""
    if isinstance(exc, BalanceConflictError):
        return True
    if isinstance(exc, ConnectionFailure):
        return True
    if isinstance(exc, PyMongoError) and (
        exc.has_error_label("TransientTransactionError")
        or exc.has_error_label("UnknownTransactionCommitResult")
    ):
        return True
    # WriteConflict
    if isinstance(exc, OperationFailure) and exc.code == 112:
        return True
    return False


class MongoTransactionRunner(TransactionRunnerInterface):
    def __init__(self, client: MongoClient, retry_policy: RetryPolicy) -> None:
        self._client = client
        self._retry_policy = retry_policy

    def run(self, callback: Callable[[Any], T]) -> T:
        def _attempt() -> T:
            with self._client.start_session() as session:
                # with_transaction 은 자체적으로도 TransientTransactionError 를 재시도하지만
                # 시간 제한(120초)만 있으므로, 시도 횟수 상한은 RetryPolicy 가 책임진다.
                return session.with_transaction(
                    callback,
                    read_concern=ReadConcern("snapshot"),
                    write_concern=WriteConcern("majority"),
                )

        try:
            return self._retry_policy.call(_attempt, retry_on=is_transient_storage_error)
        except RetryExhaustedError as exc:
            raise StorageUnavailableError(str(exc)) from exc
        except PyMongoError as exc:
            logger.error("non-retryable storage failure: %s", exc)
            raise StorageUnavailableError(str(exc)) from exc
