# api/v1/api.py
from fastapi import APIRouter
from app.api.v1.endpoints import queue, billing

api_router = APIRouter()

# VTON 큐 / 과금 API 엔드포인트 등록
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
api_router.include_router(billing.router, prefix="/billing", tags=["billing"])
