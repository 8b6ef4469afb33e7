"""크레딧 원장 레포지토리 구현체.

원장은 추가 전용이다. 유니크 인덱스(transaction_ref, idempotency_key, 환불 대상)가
중복 적용을 막는 최종 방어선이며, DuplicateKeyError 는 도메인 예외로 변환해 올린다.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from common.mongo.client import LEDGER_COLLECTION

from ..exceptions import (
    DuplicateIdempotencyKeyError,
    DuplicateRefundError,
    DuplicateTransactionRefError,
)
from ..models.ledger import (
    LedgerEntry,
    LedgerFilter,
    LedgerSummary,
    TransactionDirection,
    TransactionStatus,
    TransactionType,
)
from .documents.ledger_document import LedgerEntryDocument
from .interfaces import LedgerRepositoryInterface


MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


def normalize_paging(page: int, page_size: int) -> tuple[int, int]:
    if page <= 0:
        page = 1
    if page_size <= 0 or page_size > MAX_PAGE_SIZE:
        page_size = DEFAULT_PAGE_SIZE
    return page, page_size


def build_ledger_query(user_id: str, flt: LedgerFilter) -> dict[str, Any]:
    """LedgerFilter 를 Mongo 쿼리로 변환한다."""
    query: dict[str, Any] = {"user_id": user_id}

    if flt.type is not None:
        query["type"] = str(flt.type)

    if flt.direction == TransactionDirection.CREDIT:
        query["amount"] = {"$gt": 0}
    elif flt.direction == TransactionDirection.DEBIT:
        query["amount"] = {"$lt": 0}

    created: dict[str, datetime] = {}
    if flt.start_date is not None:
        created["$gte"] = flt.start_date
    if flt.end_date is not None:
        created["$lte"] = flt.end_date
    if created:
        query["created_at"] = created

    search = (flt.search or "").strip()
    if search:
        query["description"] = {"$regex": re.escape(search), "$options": "i"}

    return query


def _translate_duplicate_key(exc: DuplicateKeyError, entry: LedgerEntry) -> Exception:
    details = exc.details or {}
    key_pattern = details.get("keyPattern") or {}
    message = str(exc)

    if "idempotency_key" in key_pattern or "idempotency_key" in message:
        return DuplicateIdempotencyKeyError(entry.idempotency_key)
    if "related_transaction_ref" in key_pattern or "related_transaction_ref" in message:
        return DuplicateRefundError(entry.related_transaction_ref)
    return DuplicateTransactionRefError(entry.transaction_ref)


class LedgerRepository(LedgerRepositoryInterface):
    """credit_ledger 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database[LEDGER_COLLECTION]

    def append(self, entry: LedgerEntry, *, session: Any = None) -> LedgerEntry:
        doc = LedgerEntryDocument.from_domain(entry)
        try:
            result = self._col.insert_one(doc.to_mongo_record(), session=session)
        except DuplicateKeyError as exc:
            raise _translate_duplicate_key(exc, entry) from exc
        return entry.model_copy(update={"id": str(result.inserted_id)})

    def _find_one(self, query: dict[str, Any]) -> LedgerEntry | None:
        raw = self._col.find_one(query)
        if raw is None:
            return None
        return LedgerEntryDocument.model_validate(raw).to_domain()

    def find_by_transaction_ref(self, transaction_ref: str) -> LedgerEntry | None:
        return self._find_one({"transaction_ref": transaction_ref})

    def find_by_idempotency_key(self, idempotency_key: str) -> LedgerEntry | None:
        return self._find_one({"idempotency_key": idempotency_key})

    def find_refund_for(self, related_transaction_ref: str) -> LedgerEntry | None:
        return self._find_one(
            {
                "type": str(TransactionType.REFUND),
                "related_transaction_ref": related_transaction_ref,
            }
        )

    def exists_for_provider_transaction(
        self, provider_transaction_id: str, idempotency_key: str
    ) -> bool:
        """결제사 거래가 이미 원장에 반영됐는지 확인한다.

        웹훅/동기화가 남긴 멱등성 키, 결제사 거래 ID 필드, 동기화 보정의 related_transaction_ref
        중 하나라도 일치하면 반영된 것으로 본다.
        """
        query = {
            "$or": [
                {"idempotency_key": idempotency_key},
                {"provider_transaction_id": provider_transaction_id},
                {
                    "type": str(TransactionType.SYNC_ADJUSTMENT),
                    "related_transaction_ref": provider_transaction_id,
                },
            ]
        }
        return self._col.count_documents(query, limit=1) > 0

    def has_entries(self, user_id: str) -> bool:
        return self._col.count_documents({"user_id": user_id}, limit=1) > 0

    def sum_completed(self, user_id: str, *, session: Any = None) -> int:
        pipeline = [
            {
                "$match": {
                    "user_id": user_id,
                    "status": str(TransactionStatus.COMPLETED),
                }
            },
            {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
        ]
        for doc in self._col.aggregate(pipeline, session=session):
            return int(doc["total"])
        return 0

    def list_by_user(
        self, user_id: str, flt: LedgerFilter
    ) -> tuple[list[LedgerEntry], int]:
        """사용자의 원장 엔트리를 최신순으로 페이지 조회한다."""
        page, page_size = normalize_paging(flt.page, flt.page_size)
        skip = (page - 1) * page_size
        query = build_ledger_query(user_id, flt)

        total = self._col.count_documents(query)
        cursor = self._col.find(
            query,
            sort=[("created_at", -1), ("_id", -1)],
            skip=skip,
            limit=page_size,
        )

        items: list[LedgerEntry] = []
        for raw in cursor:
            items.append(LedgerEntryDocument.model_validate(raw).to_domain())

        return items, total

    def summarize(self, user_id: str, flt: LedgerFilter) -> LedgerSummary:
        pipeline = [
            {"$match": build_ledger_query(user_id, flt)},
            {
                "$group": {
                    "_id": None,
                    "credited": {
                        "$sum": {"$cond": [{"$gt": ["$amount", 0]}, "$amount", 0]}
                    },
                    "debited": {
                        "$sum": {"$cond": [{"$lt": ["$amount", 0]}, "$amount", 0]}
                    },
                }
            },
        ]
        for doc in self._col.aggregate(pipeline):
            credited = int(doc["credited"])
            debited = -int(doc["debited"])
            return LedgerSummary(
                total_credited=credited,
                total_debited=debited,
                net_change=credited - debited,
            )
        return LedgerSummary()

    def list_since(self, user_id: str, since: datetime) -> list[LedgerEntry]:
        cursor = self._col.find(
            {
                "user_id": user_id,
                "status": str(TransactionStatus.COMPLETED),
                "created_at": {"$gte": since},
            },
            sort=[("created_at", 1), ("_id", 1)],
        )
        return [LedgerEntryDocument.model_validate(raw).to_domain() for raw in cursor]
