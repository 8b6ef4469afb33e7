"""도메인 예외 -> HTTP 응답 매핑.

라우터는 서비스 예외를 그대로 올리고, 여기서 한 곳에서 상태 코드를 정한다.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..exceptions import (
    CreditServiceError,
    CreditValidationError,
    InsufficientBalanceError,
    JobConflictError,
    JobNotFoundError,
    StorageUnavailableError,
    UserNotFoundError,
)


logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, **fields: object) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": {"code": code, "message": message, **fields}},
    )


async def _insufficient_balance_handler(
    request: Request, exc: InsufficientBalanceError
) -> JSONResponse:
    return _error(
        status.HTTP_402_PAYMENT_REQUIRED,
        "insufficient_credits",
        "크레딧이 부족합니다.",
        balance=exc.balance,
        required=exc.required,
    )


async def _not_found_handler(request: Request, exc: CreditServiceError) -> JSONResponse:
    code = "job_not_found" if isinstance(exc, JobNotFoundError) else "user_not_found"
    return _error(status.HTTP_404_NOT_FOUND, code, str(exc))


async def _validation_handler(request: Request, exc: CreditValidationError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, "invalid_request", str(exc))


async def _job_conflict_handler(request: Request, exc: JobConflictError) -> JSONResponse:
    return _error(
        status.HTTP_409_CONFLICT,
        "job_conflict",
        str(exc),
        process_id=exc.process_id,
    )


async def _storage_unavailable_handler(
    request: Request, exc: StorageUnavailableError
) -> JSONResponse:
    logger.error("storage unavailable on %s %s: %s", request.method, request.url.path, exc)
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "storage_unavailable",
        "잠시 후 다시 시도해 주세요.",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InsufficientBalanceError, _insufficient_balance_handler)  # type: ignore[arg-type]
    app.add_exception_handler(UserNotFoundError, _not_found_handler)  # type: ignore[arg-type]
    app.add_exception_handler(JobNotFoundError, _not_found_handler)  # type: ignore[arg-type]
    app.add_exception_handler(JobConflictError, _job_conflict_handler)  # type: ignore[arg-type]
    app.add_exception_handler(CreditValidationError, _validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StorageUnavailableError, _storage_unavailable_handler)  # type: ignore[arg-type]
