from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
import logging
import time
import uuid

logger = logging.getLogger(__name__)

class RequestContextMiddleware(BaseHTTPMiddleware):
    """요청 ID / 처리 시간 헤더 부여 및 접근 로그"""

    async def dispatch(self, request: Request, call_next):
        # 클라이언트가 보낸 요청 ID가 있으면 그대로 사용
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        response.headers["X-Request-Id"] = request_id
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({process_time * 1000:.1f}ms) [{request_id}]"
        )
        return response
