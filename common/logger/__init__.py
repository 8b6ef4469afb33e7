import json
import logging
import os
import sys
from contextvars import ContextVar


DEFAULT_LOGGER_NAME = "credit-ledger"

# HTTP 요청 처리 중인 스레드/태스크의 request_id. 미들웨어가 설정하고 로그 필터가 읽는다.
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# extra 로 전달되면 JSON 필드로 그대로 노출하는 키 목록
EXTRA_LOG_KEYS: tuple[str, ...] = (
    "request_id",
    "span_id",
    "method",
    "path",
    "status",
    "body",
    "duration",
    "user_id",
    "process_id",
    "transaction_ref",
    "event_type",
)


class RequestContextFilter(logging.Filter):
    """요청 컨텍스트의 request_id 를 모든 레코드에 붙인다.

    서비스/리포지토리 계층 로그도 미들웨어 완료 로그와 같은 request_id 로 묶인다.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            request_id = request_id_var.get()
            if request_id is not None:
                record.request_id = request_id
        return True


def setup_logger(
    name: str = DEFAULT_LOGGER_NAME, level: str | None = None
) -> logging.Logger:
    """원장 서비스 로거를 JSON 출력으로 설정한다.

    level 이 None 이면 LOG_LEVEL 환경 변수(기본 INFO)를 따른다.
    여러 번 호출해도 핸들러가 중복으로 붙지 않는다.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(os.getenv("SERVICE_NAME", name))
    logger.setLevel(log_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())
    logger.addHandler(handler)

    # 모듈 로거(logging.getLogger(__name__))는 루트로 전파된다
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.addHandler(handler)
        root_logger.setLevel(log_level)

    # 재시도 경고가 pymongo 내부 DEBUG 로그에 묻히지 않도록
    logging.getLogger("pymongo").setLevel(max(log_level, logging.INFO))

    return logger


class JsonFormatter(logging.Formatter):
    """datetime, level, logger, message 와 EXTRA_LOG_KEYS 값을 한 줄 JSON 으로 출력한다."""

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        log_record: dict[str, object] = {
            "datetime": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in EXTRA_LOG_KEYS:
            if hasattr(record, key):
                log_record[key] = getattr(record, key)

        service_name = os.getenv("SERVICE_NAME")
        if service_name:
            log_record["service_name"] = service_name

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_record, ensure_ascii=False, default=str)
