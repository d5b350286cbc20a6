"""
VTON 큐 폴링 클라이언트

비즈니스 로직:
- 작업 접수 후 고정 간격(기본 3초)으로 상태를 조회하여 completed/failed가 되면 반환
- 최대 대기 시간(기본 300초)을 넘기면 PollTimeoutError (서버 측 작업은 계속 진행)
- 서버 응답 오류는 QueuePollError로 전달
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.errors import VtonServiceError
from app.models.database import STATUS_COMPLETED, STATUS_FAILED

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)


class QueuePollError(VtonServiceError):
    """큐 API 호출 실패"""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class PollTimeoutError(QueuePollError):
    """최대 폴링 시간 초과"""
    pass


@dataclass
class SubmitResult:
    success: bool
    queue_id: Optional[str] = None
    results: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None


class QueuePoller:
    """/api/v1/queue 소비자"""

    def __init__(
        self,
        base_url: str,
        poll_interval: Optional[float] = None,
        max_poll_time: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.poll_interval = settings.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.max_poll_time = settings.POLL_TIMEOUT_SECONDS if max_poll_time is None else max_poll_time
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self._transport, timeout=30.0)

    async def add(self, request: Dict[str, Any]) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.post("/api/v1/queue", json=request)
        return self._parse(response)

    async def status(self, queue_id: str) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.get(f"/api/v1/queue/{queue_id}")
        return self._parse(response)["item"]

    async def stats(self) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.get("/api/v1/queue")
        return self._parse(response)["stats"]

    async def cancel(self, queue_id: str) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.delete(f"/api/v1/queue/{queue_id}")
        return self._parse(response)

    async def wait_for_completion(
        self,
        queue_id: str,
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Dict[str, Any]:
        """종료 상태가 될 때까지 폴링하여 최종 아이템 반환"""
        started = self._clock()

        while True:
            if self._clock() - started > self.max_poll_time:
                logger.warning(f"Polling timeout exceeded for job {queue_id}")
                raise PollTimeoutError(f"Polling timeout exceeded for job {queue_id}", code="POLL_TIMEOUT")

            item = await self.status(queue_id)
            if on_progress:
                on_progress(item)

            if item.get("status") in TERMINAL_STATUSES:
                return item

            await self._sleep(self.poll_interval)

    async def submit_and_wait(
        self,
        request: Dict[str, Any],
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> SubmitResult:
        """접수 후 완료까지 대기 (접수 거절/실패/시간 초과는 error에 담아 반환)"""
        try:
            added = await self.add(request)
        except QueuePollError as e:
            return SubmitResult(success=False, error=str(e))

        queue_id = added["queueId"]
        try:
            item = await self.wait_for_completion(queue_id, on_progress)
        except QueuePollError as e:
            return SubmitResult(success=False, queue_id=queue_id, error=str(e))

        if item.get("status") == STATUS_COMPLETED and item.get("resultData"):
            return SubmitResult(success=True, queue_id=queue_id, results=item["resultData"].get("results"))

        return SubmitResult(success=False, queue_id=queue_id, error=item.get("errorMessage") or "Processing failed")

    @staticmethod
    def _parse(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise QueuePollError(f"Invalid response ({response.status_code})", status_code=response.status_code)

        if response.status_code >= 400 or not data.get("success", False):
            error = data.get("error") or {}
            raise QueuePollError(
                error.get("message") or f"Request failed ({response.status_code})",
                code=error.get("code"),
                status_code=response.status_code,
            )
        return data
