"""유저 잔액 MongoDB 도큐먼트."""

from __future__ import annotations

from common.mongo.types import BaseDocument, OptionalMongoDateTime, from_object_id

from ...models.balance import SubscriptionSnapshot, UserBalance


class UserBalanceDocument(BaseDocument):
    """MongoDB user_balances 컬렉션 도큐먼트 모델.

    subscription 은 서브 도큐먼트로 저장되며, 구독이 없으면 null 이다.
    """

    user_id: str
    credits: int = 0
    email: str | None = None
    customer_id: str | None = None
    subscription: SubscriptionSnapshot | None = None
    balance_verified_at: OptionalMongoDateTime = None

    @classmethod
    def from_domain(cls, balance: UserBalance) -> "UserBalanceDocument":
        data = balance.model_dump(exclude={"id"})
        return cls.model_validate(data)

    def to_domain(self) -> UserBalance:
        return UserBalance(
            id=from_object_id(self.id),
            user_id=self.user_id,
            credits=self.credits,
            email=self.email,
            customer_id=self.customer_id,
            subscription=self.subscription,
            balance_verified_at=self.balance_verified_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
