from __future__ import annotations

import os
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI

from common.eventbus.kafka import close_kafka_event_bus
from common.logger import setup_logger
from common.middleware.request_trace import RequestTraceMiddleware

from .api.errors import register_exception_handlers
from .api.health import router as health_router
from .api.v1 import api_router
from .event_handlers.job_progress_consumer import run_job_progress_consumer


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - framework hook
    """애플리케이션 생명주기 동안 JobProgressEvent 컨슈머 스레드를 관리한다."""

    progress_stop_flag = [False]
    progress_thread = threading.Thread(
        target=run_job_progress_consumer,
        args=(progress_stop_flag,),
        name="job-progress-consumer",
        daemon=True,
    )
    progress_thread.start()

    try:
        yield
    finally:
        progress_stop_flag[0] = True
        progress_thread.join(timeout=10.0)
        close_kafka_event_bus()


def create_app() -> FastAPI:
    setup_logger()
    app = FastAPI(
        title="Credit Ledger Service",
        version="0.1.0",
        lifespan=lifespan,
    )

    # 공통 Request/Span ID 로그 미들웨어
    app.add_middleware(RequestTraceMiddleware)
    register_exception_handlers(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()


def main() -> None:
    import uvicorn

    port = int(os.getenv("CREDIT_SERVICE_PORT", "8003"))
    uvicorn.run(
        "credit_service.app.main:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        access_log=False,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
