from __future__ import annotations

import os


MONGO_URI_ENV = "MONGO_URI"
MONGO_DB_NAME_ENV = "MONGO_DB_NAME"
MONGO_APP_NAME_ENV = "MONGO_APP_NAME"

DEFAULT_APP_NAME = "credit-ledger"


def get_mongo_uri() -> str:
    """MongoDB 연결 URI 를 환경 변수에서 읽는다.

    원장 트랜잭션은 레플리카셋(또는 샤드 클러스터)에서만 동작하므로 URI 는 필수다.
    설정되지 않은 경우 애플리케이션이 즉시 실패하도록 RuntimeError 를 발생시킨다.
    """

    value = os.getenv(MONGO_URI_ENV)
    if not value:
        raise RuntimeError(
            f"{MONGO_URI_ENV} environment variable is required for MongoDB",
        )
    return value


def get_mongo_db_name() -> str | None:
    """MONGO_DB_NAME 이 비어 있으면 None 을 반환해 URI 의 기본 DB 를 쓰게 한다."""

    value = os.getenv(MONGO_DB_NAME_ENV, "").strip()
    return value or None


def get_mongo_app_name() -> str:
    value = os.getenv(MONGO_APP_NAME_ENV, "").strip()
    return value or DEFAULT_APP_NAME
