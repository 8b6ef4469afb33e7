from fastapi import APIRouter

from .billing import router as billing_router
from .credits import router as credits_router
from .jobs import router as jobs_router

api_router = APIRouter()
api_router.include_router(
    credits_router
)  # prefix는 router 파일 내부에서 정의되어 있음 (/credits)
api_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
api_router.include_router(billing_router, prefix="/billing", tags=["billing"])
