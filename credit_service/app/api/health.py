from __future__ import annotations

import logging
from typing import Callable

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from common.mongo.client import get_database


logger = logging.getLogger(__name__)

router = APIRouter()


def get_storage_ping() -> Callable[[], None]:
    """FastAPI DI용 저장소 ping 함수 팩토리."""

    def ping() -> None:
        get_database().client.admin.command("ping")

    return ping


@router.get("/health", summary="헬스 체크")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/ready", summary="원장 저장소 연결 확인")
def ready(ping: Callable[[], None] = Depends(get_storage_ping)):
    # MONGO_URI 미설정은 RuntimeError 로 올라온다
    try:
        ping()
    except (PyMongoError, RuntimeError) as exc:
        logger.warning("readiness check failed: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable"},
        )
    return {"status": "ok"}
