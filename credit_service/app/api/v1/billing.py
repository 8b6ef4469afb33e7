"""Paddle 웹훅 수신 라우터.

응답 코드 규칙:
- 401: 서명 헤더 누락/불일치/만료
- 500: 웹훅 시크릿 미설정, 또는 재시도하면 성공할 수 있는 오류 (결제사가 재전달한다)
- 200: 처리 완료, 무시한 이벤트, 재시도해도 소용없는 오류
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ...billing.signature import SIGNATURE_HEADER
from ...exceptions import (
    CreditServiceError,
    StorageUnavailableError,
    WebhookConfigurationError,
    WebhookSignatureError,
    WebhookUserNotFoundError,
)
from ...services.billing_webhook_service import (
    BillingWebhookService,
    get_billing_webhook_service,
)


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    service: Annotated[BillingWebhookService, Depends(get_billing_webhook_service)],
    paddle_signature: Annotated[str | None, Header(alias=SIGNATURE_HEADER)] = None,
) -> JSONResponse:
    # 서명은 원본 바이트 기준이므로 파싱 전에 읽는다
    raw_body = await request.body()

    try:
        outcome = await run_in_threadpool(service.handle, raw_body, paddle_signature)
    except WebhookSignatureError as exc:
        logger.warning("rejected webhook: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "Invalid signature"},
        )
    except WebhookConfigurationError:
        logger.error("webhook secret is not configured")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook not configured"},
        )
    except (WebhookUserNotFoundError, StorageUnavailableError) as exc:
        logger.error("retryable webhook failure: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Processing failed", "message": str(exc)},
        )
    except CreditServiceError as exc:
        # 재전달해도 결과가 같으므로 수신 확인만 한다
        logger.exception("non-retryable webhook failure")
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"success": False, "error": str(exc)},
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "success": True,
            "event": outcome.event_type,
            "handled": outcome.handled,
        },
    )
