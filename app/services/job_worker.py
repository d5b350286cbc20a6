"""
VTON 작업 워커

비즈니스 로직:
- pending 아이템을 FIFO로 조회하여 조건부 UPDATE로 점유 (한 워커만 성공)
- 의상별로 순차 추론: 첫 의상은 요청 모드, 이후는 add_item 모드로 직전 결과 이미지에 덧입힘
- 실패 시 재시도 가능한 오류이고 재시도 횟수가 남아 있으면 지수 백오프로 pending 복귀
- 재시도 소진/재시도 불가/취소 요청된 아이템은 failed 처리 후 크레딧 환불
- processing에 오래 머문 아이템은 실패한 시도로 간주하여 복구
- 의상 하나를 끝낼 때마다 점유 갱신 (retry_count가 같은 시도일 때만), 갱신 실패 시 점유를 잃은 것으로 보고 중단
- 실패 전이 후 환불이 끊긴 아이템은 다음 사이클에서 환불 보정
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.credits import CreditLedger
from app.core.errors import ErrorKind, InferenceError, VtonServiceError, user_message_for
from app.crud import queue as queue_store
from app.models.database import STATUS_PROCESSING
from app.services.inference import InferenceClient
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

ADD_ITEM_MODE = "add_item"
STALE_ERROR = "processing timed out"


class ClaimLostError(VtonServiceError):
    """처리 중 다른 워커가 아이템을 가져감 (같은 시도가 아님)"""
    pass


@dataclass
class WorkerConfig:
    """워커 설정"""
    poll_interval: float = 1.0
    batch_size: int = 5
    max_concurrent: int = 1
    max_retries: int = 1
    retry_delay_base: float = 10.0
    job_timeout: float = 120.0
    stale_job_timeout: float = 300.0
    shutdown_timeout: float = 30.0

    def __post_init__(self):
        # 의상 한 건 추론이 끝나기 전에 stale로 회수되지 않아야 함
        if self.stale_job_timeout <= self.job_timeout:
            raise ValueError(
                f"stale_job_timeout ({self.stale_job_timeout}s) must be greater than "
                f"job_timeout ({self.job_timeout}s)"
            )

    @classmethod
    def from_settings(cls) -> "WorkerConfig":
        return cls(
            poll_interval=settings.WORKER_POLL_INTERVAL,
            batch_size=settings.WORKER_BATCH_SIZE,
            max_concurrent=settings.WORKER_MAX_CONCURRENT,
            max_retries=settings.MAX_RETRIES,
            retry_delay_base=settings.RETRY_DELAY_BASE_SECONDS,
            job_timeout=settings.INFERENCE_TIMEOUT_SECONDS,
            stale_job_timeout=settings.STALE_PROCESSING_SECONDS,
        )

    def retry_delay(self, retry_count: int) -> float:
        return self.retry_delay_base * (2 ** retry_count)


class JobWorker:
    """큐 폴링 워커

    사용 예:
        worker = JobWorker(SessionLocal, HttpInferenceClient(), ledger)
        await worker.run()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        inference: InferenceClient,
        ledger: CreditLedger,
        config: Optional[WorkerConfig] = None,
    ):
        self.session_factory = session_factory
        self.inference = inference
        self.ledger = ledger
        self.config = config or WorkerConfig.from_settings()

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._active_jobs: Set[str] = set()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)

        self._processed_count = 0
        self._failed_count = 0
        self._retried_count = 0
        self._start_time: Optional[datetime] = None

    async def run(self, install_signal_handlers: bool = False) -> None:
        """종료 요청 전까지 폴링"""
        logger.info("Starting VTON worker...")
        self._running = True
        self._start_time = utcnow()

        if install_signal_handlers:
            self._setup_signal_handlers()

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    await self.run_once()
                except Exception as e:
                    logger.exception(f"Worker loop error: {e}")

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.config.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._active_jobs:
                logger.info(f"Waiting for {len(self._active_jobs)} active jobs to complete...")
                try:
                    await asyncio.wait_for(self._wait_for_active_jobs(), timeout=self.config.shutdown_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Shutdown timeout - some jobs may not have completed")

            self._running = False
            logger.info(
                f"Worker stopped. Processed: {self._processed_count}, "
                f"Failed: {self._failed_count}, Retried: {self._retried_count}"
            )

    async def stop(self) -> None:
        logger.info("Stopping VTON worker...")
        self._running = False
        self._shutdown_event.set()

    async def run_once(self) -> int:
        """stale 복구 → 점유 → 처리 한 사이클, 처리한 아이템 수 반환"""
        self.recover_stale()
        self.reconcile_refunds()

        claimed = self._claim_batch()
        if claimed:
            await asyncio.gather(*(self._process_item(queue_id) for queue_id in claimed))
        return len(claimed)

    async def process_next(self) -> Optional[str]:
        """가장 오래된 처리 가능 아이템 하나만 처리"""
        claimed = self._claim_batch(limit=1)
        if not claimed:
            return None
        await self._process_item(claimed[0])
        return claimed[0]

    def recover_stale(self, now: Optional[datetime] = None) -> int:
        """processing에 오래 머문 아이템을 실패한 시도로 처리"""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.config.stale_job_timeout)

        with self.session_factory() as db:
            stale = [
                (item.id, item.retry_count)
                for item in queue_store.find_stale_processing(db, cutoff)
                if item.id not in self._active_jobs
            ]
            db.commit()

        for queue_id, retry_count in stale:
            logger.warning(f"Recovering stale processing job {queue_id} (retry_count={retry_count})")
            self._handle_failure(
                queue_id,
                error=STALE_ERROR,
                attempt=retry_count,
                retryable=True,
                user_message=user_message_for(ErrorKind.JOB_FAILED),
                now=now,
            )
        return len(stale)

    def reconcile_refunds(self) -> int:
        """failed 전이 후 환불되지 않은 과금 아이템을 환불, 환불한 건수 반환"""
        with self.session_factory() as db:
            pending_refunds = [
                (item.id, item.error_message, item.credit_transaction_id)
                for item in queue_store.find_unrefunded_failures(db, self.config.batch_size)
            ]
            db.commit()

            refunded = 0
            for queue_id, error_message, transaction_id in pending_refunds:
                reason = queue_store.CANCELED_MESSAGE if error_message == queue_store.CANCELED_MESSAGE else "job_failed"
                try:
                    result = self.ledger.refund(db, queue_id, reason=reason, transaction_id=transaction_id)
                except SQLAlchemyError as e:
                    logger.error(f"Refund reconciliation failed for job {queue_id}: {str(e)}")
                    continue

                if result.refunded and not result.replayed:
                    refunded += 1
                    logger.warning(f"Reconciled missing refund for failed job {queue_id}")
                elif not result.refunded:
                    logger.warning(f"Could not reconcile refund for job {queue_id}: {result.error_kind}")
        return refunded

    def get_stats(self) -> Dict[str, Any]:
        uptime = None
        if self._start_time:
            uptime = (utcnow() - self._start_time).total_seconds()

        return {
            "running": self._running,
            "active_jobs": len(self._active_jobs),
            "processed_count": self._processed_count,
            "failed_count": self._failed_count,
            "retried_count": self._retried_count,
            "uptime_seconds": uptime,
        }

    # ------------------------------------------------------------------
    # 내부 처리
    # ------------------------------------------------------------------

    def _claim_batch(self, limit: Optional[int] = None) -> List[str]:
        claimed = []
        with self.session_factory() as db:
            candidates = queue_store.find_claimable_ids(db, limit or self.config.batch_size)
            db.commit()

            for queue_id in candidates:
                if queue_id in self._active_jobs:
                    continue
                if queue_store.claim_item(db, queue_id):
                    logger.info(f"Claimed job {queue_id}")
                    claimed.append(queue_id)
                else:
                    logger.debug(f"Job {queue_id} already claimed by another worker")
        return claimed

    async def _process_item(self, queue_id: str) -> None:
        async with self._semaphore:
            self._active_jobs.add(queue_id)
            try:
                with self.session_factory() as db:
                    item = queue_store.get_queue_item(db, queue_id)
                    payload = dict(item.payload or {}) if item else None
                    attempt = item.retry_count if item else 0
                    db.commit()

                if payload is None:
                    logger.error(f"Claimed job {queue_id} disappeared before processing")
                    return

                results: List[Dict[str, Any]] = []
                try:
                    await self._run_garments(queue_id, payload, results, attempt)
                except ClaimLostError:
                    logger.warning(f"Job {queue_id} was reclaimed by another attempt, abandoning this run")
                    return
                except InferenceError as e:
                    logger.error(f"Inference failed for job {queue_id}: {str(e)}")
                    self._handle_failure(queue_id, str(e), e.retryable, e.user_message, results, attempt=attempt)
                    return
                except asyncio.TimeoutError:
                    logger.error(f"Inference timed out for job {queue_id} after {self.config.job_timeout}s")
                    self._handle_failure(
                        queue_id, "inference timeout", True, user_message_for(ErrorKind.JOB_FAILED), results,
                        attempt=attempt,
                    )
                    return
                except Exception as e:
                    logger.exception(f"Unexpected error while processing job {queue_id}: {e}")
                    self._handle_failure(
                        queue_id, str(e), True, user_message_for(ErrorKind.JOB_FAILED), results, attempt=attempt
                    )
                    return

                result_data = {
                    "results": results,
                    "totalProcessingTime": sum(r["processingTime"] for r in results),
                }
                with self.session_factory() as db:
                    completed = queue_store.complete_item(db, queue_id, result_data, expected_retry_count=attempt)

                if completed:
                    self._processed_count += 1
                    logger.info(
                        f"Completed job {queue_id} ({len(results)} garments, "
                        f"{result_data['totalProcessingTime']}ms)"
                    )
                else:
                    logger.warning(f"Job {queue_id} left processing before completion, result discarded")
            finally:
                self._active_jobs.discard(queue_id)

    async def _run_garments(
        self,
        queue_id: str,
        payload: Dict[str, Any],
        results: List[Dict[str, Any]],
        attempt: int = 0,
    ) -> None:
        """의상 순차 추론 (결과는 results에 누적되어 실패 시 부분 결과로 남음)"""
        garments = payload.get("garmentImages") or []
        categories = payload.get("categories") or []
        current_person = payload.get("personImage")

        for index, garment_image in enumerate(garments):
            category = categories[index] if index < len(categories) else None
            mode = (payload.get("mode") or "standard") if index == 0 else ADD_ITEM_MODE
            logger.info(f"Processing garment {index + 1}/{len(garments)} ({category}) for job {queue_id}")

            started = time.monotonic()
            output = await asyncio.wait_for(
                self.inference.generate(current_person, garment_image, category, mode),
                timeout=self.config.job_timeout,
            )
            processing_time = int((time.monotonic() - started) * 1000)

            results.append({
                "resultImage": output["resultImage"],
                "category": category,
                "processingTime": processing_time,
                "confidence": output.get("confidence"),
            })
            current_person = output["resultImage"]

            with self.session_factory() as db:
                if not queue_store.heartbeat(db, queue_id, attempt):
                    raise ClaimLostError(f"job {queue_id} is no longer processing as attempt {attempt}")

    def _handle_failure(
        self,
        queue_id: str,
        error: str,
        retryable: bool,
        user_message: str,
        partial_results: Optional[List[Dict[str, Any]]] = None,
        now: Optional[datetime] = None,
        attempt: Optional[int] = None,
    ) -> None:
        """재시도 예약 또는 최종 실패 + 환불"""
        now = now or utcnow()

        with self.session_factory() as db:
            item = queue_store.get_queue_item(db, queue_id)
            if not item or item.status != STATUS_PROCESSING:
                db.commit()
                return
            if attempt is not None and item.retry_count != attempt:
                db.commit()
                logger.warning(
                    f"Job {queue_id} moved on to attempt {item.retry_count}, ignoring failure of attempt {attempt}"
                )
                return
            retry_count = item.retry_count
            transaction_id = item.credit_transaction_id
            cancel_requested = bool(item.cancel_requested)
            db.commit()

            if retryable and not cancel_requested and retry_count < self.config.max_retries:
                delay = self.config.retry_delay(retry_count)
                if queue_store.schedule_retry(db, queue_id, retry_count, now + timedelta(seconds=delay), user_message, now):
                    self._retried_count += 1
                    logger.info(
                        f"Job {queue_id} scheduled for retry ({retry_count + 1}/{self.config.max_retries}) "
                        f"in {delay}s: {error}"
                    )
                    return

            result_data = None
            if partial_results:
                result_data = {
                    "results": partial_results,
                    "totalProcessingTime": sum(r["processingTime"] for r in partial_results),
                }

            error_message = queue_store.CANCELED_MESSAGE if cancel_requested else user_message
            if not queue_store.fail_item(db, queue_id, error_message, result_data, now, expected_retry_count=retry_count):
                logger.warning(f"Job {queue_id} changed state before it could be failed")
                return

            self._failed_count += 1
            logger.error(f"Job {queue_id} failed after {retry_count} retries: {error}")

            reason = queue_store.CANCELED_MESSAGE if cancel_requested else "job_failed"
            try:
                refund = self.ledger.refund(db, queue_id, reason=reason, transaction_id=transaction_id)
            except SQLAlchemyError as e:
                logger.error(f"Refund for failed job {queue_id} did not go through, will be reconciled: {str(e)}")
                return
            if not refund.refunded:
                logger.warning(f"No credit refunded for failed job {queue_id}: {refund.error_kind}")

    async def _wait_for_active_jobs(self) -> None:
        while self._active_jobs:
            await asyncio.sleep(0.5)

    def _setup_signal_handlers(self) -> None:
        try:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))
        except (NotImplementedError, RuntimeError):
            # Windows 등 시그널 핸들러 미지원 환경
            pass
