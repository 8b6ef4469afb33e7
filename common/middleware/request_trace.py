import logging
import re
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from common.logger import request_id_var


REQUEST_ID_HEADER = "X-Request-Id"
SPAN_ID_HEADER = "X-Span-Id"

IGNORED_LOG_PATHS: set[str] = {"/health", "/health/ready"}

# 결제 웹훅 바디는 고객 이메일 등 개인정보를 포함한다
REDACTED_BODY_PATHS: set[str] = {"/api/v1/billing/webhook"}

MAX_LOGGED_BODY_LENGTH = 1024

# 경로에서 로그 필드로 뽑아낼 식별자
_USER_PATH = re.compile(r"^/api/v1/credits/(?P<user_id>[^/]+)")
_JOB_PATH = re.compile(r"^/api/v1/jobs/(?P<process_id>[^/]+)")


class RequestTraceMiddleware(BaseHTTPMiddleware):
    """요청 단위 추적 ID 를 붙이고 완료 로그를 남긴다.

    - X-Request-Id 가 없으면 새로 만들고, 처리 중에는 request_id_var 에 담아
      같은 요청에서 나온 원장 로그가 같은 ID 를 갖게 한다.
    - 응답 헤더로 두 ID 를 돌려준다.
    - 5xx 응답과 처리되지 않은 예외는 각각 WARNING, ERROR 로 남긴다.
    """

    def __init__(self, app, logger: logging.Logger | None = None) -> None:  # type: ignore[override]
        super().__init__(app)
        self._logger = logger or logging.getLogger("request_trace")

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        span_id = request.headers.get(SPAN_ID_HEADER) or "0"
        request.state.request_id = request_id
        request.state.span_id = span_id

        should_log = request.url.path not in IGNORED_LOG_PATHS
        body = await self._read_body_snippet(request) if should_log else None

        token = request_id_var.set(request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            if should_log:
                self._logger.exception(
                    "request failed",
                    extra=self._build_log_extra(
                        request, span_id, body, duration=time.monotonic() - start
                    ),
                )
            raise
        finally:
            request_id_var.reset(token)

        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        response.headers.setdefault(SPAN_ID_HEADER, span_id)

        if should_log:
            level = logging.WARNING if response.status_code >= 500 else logging.INFO
            self._logger.log(
                level,
                "completed request",
                extra=self._build_log_extra(
                    request,
                    span_id,
                    body,
                    status=response.status_code,
                    duration=time.monotonic() - start,
                ),
            )

        return response

    async def _read_body_snippet(self, request: Request) -> str | None:
        if request.method not in {"POST", "PUT", "PATCH"}:
            return None
        if request.url.path in REDACTED_BODY_PATHS:
            return None

        try:
            body_bytes = await request.body()
        except Exception:  # noqa: BLE001
            return None
        if not body_bytes:
            return None
        return body_bytes.decode("utf-8", errors="replace")[:MAX_LOGGED_BODY_LENGTH]

    def _build_log_extra(
        self,
        request: Request,
        span_id: str,
        body: str | None,
        status: int | None = None,
        duration: float | None = None,
    ) -> dict[str, object]:
        path = request.url.path
        extra: dict[str, object] = {
            "request_id": request.state.request_id,
            "span_id": span_id,
            "method": request.method,
            "path": path,
        }

        for pattern in (_USER_PATH, _JOB_PATH):
            match = pattern.match(path)
            if match:
                extra.update(match.groupdict())

        if body:
            extra["body"] = body
        if status is not None:
            extra["status"] = status
        if duration is not None:
            extra["duration"] = f"{duration * 1000:.3f}ms"
        return extra
