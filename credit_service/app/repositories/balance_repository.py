"""유저 잔액 레포지토리 구현체.

잔액 쓰기는 항상 조건부(compare-and-set)다. 같은 트랜잭션 안에서 읽은 잔액이 그대로일 때만
새 값을 쓰므로, 여러 인스턴스가 동시에 같은 유저를 갱신해도 한쪽은 충돌로 재시도하게 된다.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from common.mongo.client import BALANCE_COLLECTION
from common.mongo.types import utc_now

from ..models.balance import SubscriptionSnapshot, UserBalance
from .documents.balance_document import UserBalanceDocument
from .interfaces import BalanceRepositoryInterface


class BalanceRepository(BalanceRepositoryInterface):
    """user_balances 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database[BALANCE_COLLECTION]

    def _to_domain(self, raw: dict[str, Any] | None) -> UserBalance | None:
        if raw is None:
            return None
        return UserBalanceDocument.model_validate(raw).to_domain()

    def get(self, user_id: str, *, session: Any = None) -> UserBalance | None:
        return self._to_domain(self._col.find_one({"user_id": user_id}, session=session))

    def ensure(self, user_id: str, email: str | None = None) -> UserBalance:
        """잔액 레코드가 없으면 0 크레딧으로 생성하고, 있으면 그대로 반환한다."""
        now = utc_now()
        update: dict[str, Any] = {
            "$setOnInsert": {
                "user_id": user_id,
                "credits": 0,
                "subscription": None,
                "created_at": now,
                "updated_at": now,
            }
        }
        if email:
            update["$set"] = {"email": email}

        try:
            raw = self._col.find_one_and_update(
                {"user_id": user_id},
                update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # 동시 upsert 경합에서 진 쪽. 이긴 쪽이 만든 문서를 읽는다.
            raw = self._col.find_one({"user_id": user_id})
        balance = self._to_domain(raw)
        assert balance is not None
        return balance

    def compare_and_set_credits(
        self,
        user_id: str,
        expected: int,
        new: int,
        *,
        verified_at: datetime,
        session: Any = None,
    ) -> bool:
        result = self._col.update_one(
            {"user_id": user_id, "credits": expected},
            {
                "$set": {
                    "credits": new,
                    "balance_verified_at": verified_at,
                    "updated_at": verified_at,
                }
            },
            session=session,
        )
        return result.matched_count == 1

    def find_by_subscription_id(self, subscription_id: str) -> UserBalance | None:
        return self._to_domain(self._col.find_one({"subscription.id": subscription_id}))

    def find_by_customer_id(self, customer_id: str) -> UserBalance | None:
        return self._to_domain(self._col.find_one({"customer_id": customer_id}))

    def set_customer_id(self, user_id: str, customer_id: str) -> None:
        self._col.update_one(
            {"user_id": user_id},
            {"$set": {"customer_id": customer_id, "updated_at": utc_now()}},
        )

    def replace_subscription(
        self, user_id: str, snapshot: SubscriptionSnapshot, customer_id: str | None
    ) -> None:
        now = utc_now()
        fields: dict[str, Any] = {
            "subscription": snapshot.model_dump(exclude_none=True),
            "updated_at": now,
        }
        if customer_id:
            fields["customer_id"] = customer_id
        self._col.update_one({"user_id": user_id}, {"$set": fields})

    def update_subscription(
        self,
        user_id: str,
        updates: dict[str, Any],
        unset: Iterable[str] = (),
    ) -> bool:
        """기존 구독 스냅샷의 일부 필드만 갱신한다.

        subscription 이 null 이면 점 표기 $set 이 실패하므로 객체가 있는 문서만 대상으로 한다.
        갱신 대상이 있었는지 여부를 반환한다.
        """
        now = utc_now()
        set_fields: dict[str, Any] = {
            f"subscription.{key}": value for key, value in updates.items()
        }
        set_fields["subscription.updated_at"] = now
        set_fields["updated_at"] = now

        update: dict[str, Any] = {"$set": set_fields}
        unset_fields = {f"subscription.{key}": "" for key in unset}
        if unset_fields:
            update["$unset"] = unset_fields

        result = self._col.update_one(
            {"user_id": user_id, "subscription": {"$type": "object"}},
            update,
        )
        return result.matched_count == 1

    def advance_credit_schedule(
        self,
        user_id: str,
        expected_next_credit_date: datetime,
        next_credit_date: datetime,
        last_credit_date: datetime,
    ) -> bool:
        result = self._col.update_one(
            {
                "user_id": user_id,
                "subscription.next_credit_date": expected_next_credit_date,
            },
            {
                "$set": {
                    "subscription.next_credit_date": next_credit_date,
                    "subscription.last_credit_date": last_credit_date,
                    "updated_at": utc_now(),
                }
            },
        )
        return result.matched_count == 1

    def touch_verified(self, user_id: str, verified_at: datetime) -> None:
        self._col.update_one(
            {"user_id": user_id},
            {"$set": {"balance_verified_at": verified_at}},
        )
