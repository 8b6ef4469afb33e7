"""크레딧 원장 MongoDB 도큐먼트."""

from __future__ import annotations

from typing import Any

from common.mongo.types import BaseDocument, from_object_id

from ...models.ledger import LedgerEntry, UsageDetails


class LedgerEntryDocument(BaseDocument):
    """MongoDB credit_ledger 컬렉션 도큐먼트 모델."""

    user_id: str
    transaction_ref: str
    idempotency_key: str | None = None
    type: str
    amount: int
    balance_before: int
    balance_after: int
    status: str
    source: str
    description: str
    related_transaction_ref: str | None = None
    usage_details: UsageDetails | None = None
    metadata: dict[str, Any] = {}
    provider_transaction_id: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    price_id: str | None = None
    product_id: str | None = None

    @classmethod
    def from_domain(cls, entry: LedgerEntry) -> "LedgerEntryDocument":
        data = entry.model_dump(exclude={"id"})
        return cls.model_validate(data)

    def to_domain(self) -> LedgerEntry:
        data = self.model_dump(exclude={"id"})
        return LedgerEntry(id=from_object_id(self.id), **data)
