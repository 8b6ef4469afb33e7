from __future__ import annotations

import logging
import threading
from typing import Optional, cast

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from .config import get_mongo_app_name, get_mongo_db_name, get_mongo_uri


logger = logging.getLogger(__name__)


LEDGER_COLLECTION = "credit_ledger"
BALANCE_COLLECTION = "user_balances"
JOB_COLLECTION = "generation_jobs"


_client: Optional[MongoClient] = None
_db: Optional[Database] = None
_lock = threading.Lock()


def get_client() -> MongoClient:
    """전역 MongoClient 싱글톤을 반환한다.

    - MONGO_URI 에서 URI 를 읽어온다.
    - ping 으로 연결을 검증한다.
    - 데이터베이스 이름은 MONGO_DB_NAME 또는 URI 의 기본 DB 를 사용한다.
    - 원장/잔액/작업 컬렉션의 인덱스를 한 번만 생성한다.
    """

    global _client, _db

    if _client is not None:
        return _client

    with _lock:
        if _client is not None:
            return _client

        uri = get_mongo_uri()
        client = MongoClient(uri, tz_aware=True, appname=get_mongo_app_name())

        try:
            client.admin.command("ping")
        except Exception as exc:  # noqa: BLE001
            client.close()
            raise RuntimeError(f"failed to connect to MongoDB: {exc}") from exc

        db_name = get_mongo_db_name()
        try:
            if db_name:
                db = client[db_name]
            else:
                db = client.get_default_database()
        except Exception as exc:  # noqa: BLE001
            client.close()
            raise RuntimeError(
                "MongoDB database name must be specified via MONGO_DB_NAME or in MONGO_URI (mongodb://.../db_name)",
            ) from exc

        try:
            _ensure_indexes(db)
        except Exception as exc:  # noqa: BLE001
            # 유니크 인덱스가 없으면 멱등성 보장이 깨지므로 치명적 오류로 간주한다.
            logger.error("failed to ensure MongoDB indexes: %s", exc)
            client.close()
            raise

        _client = client
        _db = db

        safe_db = cast(Database, _db)
        logger.info("MongoDB connected and indexes ensured (db=%s)", safe_db.name)
        return _client


def get_database() -> Database:
    """전역 기본 Database 객체를 반환한다."""

    global _db

    if _db is None:
        get_client()
    assert _db is not None
    return _db


def _ensure_indexes(db: Database) -> None:
    """크레딧 원장에 필요한 인덱스를 생성한다.

    멀티 도큐먼트 트랜잭션 안에서는 컬렉션을 암묵적으로 만들 수 없는 서버 버전이 있으므로,
    인덱스 생성으로 컬렉션을 미리 만들어 두는 역할도 겸한다. 중복 생성은 idempotent 하다.
    """

    ledger = db[LEDGER_COLLECTION]

    ledger.create_index(
        [("transaction_ref", ASCENDING)],
        name="uniq_transaction_ref",
        unique=True,
    )

    # 호출자가 넘긴 멱등성 키. 키가 없는 엔트리는 인덱스에서 제외한다.
    ledger.create_index(
        [("idempotency_key", ASCENDING)],
        name="uniq_idempotency_key",
        unique=True,
        sparse=True,
    )

    # 같은 차감 엔트리에 대한 환불은 한 번만 허용한다.
    ledger.create_index(
        [("related_transaction_ref", ASCENDING)],
        name="uniq_refund_related_transaction_ref",
        unique=True,
        partialFilterExpression={
            "type": "refund",
            "related_transaction_ref": {"$type": "string"},
        },
    )

    ledger.create_index(
        [("user_id", ASCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)],
        name="idx_user_created_at_id_desc",
    )

    ledger.create_index(
        [("provider_transaction_id", ASCENDING)],
        name="idx_provider_transaction_id",
        sparse=True,
    )

    balances = db[BALANCE_COLLECTION]

    balances.create_index(
        [("user_id", ASCENDING)],
        name="uniq_user_id",
        unique=True,
    )

    balances.create_index(
        [("customer_id", ASCENDING)],
        name="idx_customer_id",
        sparse=True,
    )

    balances.create_index(
        [("subscription.id", ASCENDING)],
        name="idx_subscription_id",
        sparse=True,
    )

    jobs = db[JOB_COLLECTION]

    jobs.create_index(
        [("process_id", ASCENDING)],
        name="uniq_process_id",
        unique=True,
    )

    jobs.create_index(
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="idx_user_created_at_desc",
    )
