"""
VTON 작업 워커 테스트

추론은 FakeInference로 대체하고 큐/원장은 실제 SQLite 파일 DB 사용
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.core.credits import AccountRef
from app.core.errors import ErrorKind, InferenceError, user_message_for
from app.crud import queue as queue_store
from app.models.database import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING
from app.services import job_worker
from app.services.job_worker import ADD_ITEM_MODE, STALE_ERROR, JobWorker, WorkerConfig
from app.utils.time_utils import utcnow

from conftest import load_account, sample_payload

CONSUMER = AccountRef(customer_id="cust-1")


class FakeInference:
    """순서대로 결과(dict) 또는 예외를 돌려주는 추론 대역"""

    def __init__(self, outcomes=None, delay=0.0, on_call=None):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.on_call = on_call
        self.calls = []

    async def generate(self, person_image, garment_image, category, mode):
        self.calls.append({
            "person_image": person_image,
            "garment_image": garment_image,
            "category": category,
            "mode": mode,
        })
        if self.on_call:
            self.on_call(len(self.calls))
        if self.delay:
            await asyncio.sleep(self.delay)

        outcome = self.outcomes.pop(0) if self.outcomes else {"resultImage": f"result-{len(self.calls)}.png", "confidence": 0.9}
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_worker(session_factory, ledger, inference, **overrides):
    values = dict(poll_interval=0.01, max_retries=1, retry_delay_base=0, job_timeout=5, stale_job_timeout=300)
    values.update(overrides)
    return JobWorker(session_factory, inference, ledger, WorkerConfig(**values))


def enqueue_charged(session_factory, ledger, manager, queue_id="job-1", garments=1):
    with session_factory() as session:
        deduct = ledger.check_and_deduct(session, CONSUMER, queue_id)
        assert deduct.allowed
        manager.add(
            session,
            sample_payload(garments),
            CONSUMER.owner_id,
            queue_id=queue_id,
            credit_source=deduct.source,
            credit_transaction_id=deduct.transaction_id,
        )


def get_item(session_factory, queue_id="job-1"):
    with session_factory() as session:
        item = queue_store.get_queue_item(session, queue_id)
        session.commit()
        return item


def free_tickets(session_factory):
    return load_account(session_factory, CONSUMER).free_tickets_remaining


class TestProcessing:
    @pytest.mark.asyncio
    async def test_multi_garment_job_chains_results(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager, garments=2)
        inference = FakeInference()
        worker = make_worker(session_factory, ledger, inference)

        processed = await worker.process_next()

        assert processed == "job-1"
        assert [call["mode"] for call in inference.calls] == ["standard", ADD_ITEM_MODE]
        assert inference.calls[0]["person_image"] == "https://cdn.example.com/person.png"
        assert inference.calls[1]["person_image"] == "result-1.png"
        assert [call["category"] for call in inference.calls] == ["upper_body", "lower_body"]

        item = get_item(session_factory)
        assert item.status == STATUS_COMPLETED
        assert [r["resultImage"] for r in item.result_data["results"]] == ["result-1.png", "result-2.png"]
        assert item.result_data["totalProcessingTime"] == sum(
            r["processingTime"] for r in item.result_data["results"]
        )
        assert item.completed_at is not None
        assert free_tickets(session_factory) == 2

    @pytest.mark.asyncio
    async def test_nothing_to_process(self, session_factory, ledger):
        worker = make_worker(session_factory, ledger, FakeInference())
        assert await worker.process_next() is None
        assert await worker.run_once() == 0

    @pytest.mark.asyncio
    async def test_run_once_processes_in_fifo_order(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager, "job-1")
        enqueue_charged(session_factory, ledger, manager, "job-2")
        inference = FakeInference()
        worker = make_worker(session_factory, ledger, inference, max_concurrent=1)

        assert await worker.run_once() == 2

        assert get_item(session_factory, "job-1").status == STATUS_COMPLETED
        assert get_item(session_factory, "job-2").status == STATUS_COMPLETED
        assert worker.get_stats()["processed_count"] == 2


class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        inference = FakeInference([InferenceError("upstream 503", retryable=True)])
        worker = make_worker(session_factory, ledger, inference)

        await worker.process_next()
        item = get_item(session_factory)
        assert item.status == STATUS_PENDING
        assert item.retry_count == 1

        await worker.process_next()
        item = get_item(session_factory)
        assert item.status == STATUS_COMPLETED
        assert item.retry_count == 1
        assert free_tickets(session_factory) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted_fails_and_refunds(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        inference = FakeInference([
            InferenceError("upstream 503: stack trace", retryable=True),
            InferenceError("upstream 503: stack trace", retryable=True),
        ])
        worker = make_worker(session_factory, ledger, inference)

        await worker.process_next()
        await worker.process_next()

        item = get_item(session_factory)
        assert item.status == STATUS_FAILED
        assert item.retry_count == 1
        assert "stack trace" not in item.error_message
        assert free_tickets(session_factory) == 3
        assert worker.get_stats()["failed_count"] == 1

        with session_factory() as session:
            result = ledger.refund(session, "job-1")
        assert result.replayed
        assert free_tickets(session_factory) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_failure_fails_immediately(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        inference = FakeInference([InferenceError("bad image", retryable=False, user_message="invalid image")])
        worker = make_worker(session_factory, ledger, inference, max_retries=3)

        await worker.process_next()

        item = get_item(session_factory)
        assert item.status == STATUS_FAILED
        assert item.retry_count == 0
        assert item.error_message == "invalid image"
        assert free_tickets(session_factory) == 3

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        inference = FakeInference(delay=1.0)
        worker = make_worker(session_factory, ledger, inference, job_timeout=0.05, max_retries=0)

        await worker.process_next()

        item = get_item(session_factory)
        assert item.status == STATUS_FAILED
        assert item.error_message == user_message_for(ErrorKind.JOB_FAILED)
        assert free_tickets(session_factory) == 3

    @pytest.mark.asyncio
    async def test_partial_results_kept_on_failure(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager, garments=2)
        inference = FakeInference([
            {"resultImage": "first.png", "confidence": 0.8},
            InferenceError("bad garment", retryable=False),
        ])
        worker = make_worker(session_factory, ledger, inference)

        await worker.process_next()

        item = get_item(session_factory)
        assert item.status == STATUS_FAILED
        assert [r["resultImage"] for r in item.result_data["results"]] == ["first.png"]

    @pytest.mark.asyncio
    async def test_backoff_delays_next_attempt(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        inference = FakeInference([InferenceError("upstream 503", retryable=True)])
        worker = make_worker(session_factory, ledger, inference, retry_delay_base=60)

        await worker.process_next()

        item = get_item(session_factory)
        assert item.status == STATUS_PENDING
        assert item.next_retry_at > utcnow() + timedelta(seconds=30)
        assert await worker.process_next() is None

    def test_retry_delay_is_exponential(self):
        config = WorkerConfig(retry_delay_base=10)
        assert [config.retry_delay(n) for n in range(3)] == [10, 20, 40]

    def test_stale_timeout_must_exceed_job_timeout(self):
        with pytest.raises(ValueError):
            WorkerConfig(job_timeout=120, stale_job_timeout=60)



class TestCancelDuringProcessing:
    @pytest.mark.asyncio
    async def test_cancel_requested_failure_is_not_retried(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)

        def request_cancel(call_number):
            with session_factory() as session:
                result = manager.cancel(session, "job-1")
            assert result.cancel_requested

        inference = FakeInference([InferenceError("upstream 503", retryable=True)], on_call=request_cancel)
        worker = make_worker(session_factory, ledger, inference, max_retries=3)

        await worker.process_next()

        item = get_item(session_factory)
        assert item.status == STATUS_FAILED
        assert item.error_message == queue_store.CANCELED_MESSAGE
        assert item.retry_count == 0
        assert free_tickets(session_factory) == 3

    @pytest.mark.asyncio
    async def test_cancel_requested_success_still_completes(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)

        def request_cancel(call_number):
            with session_factory() as session:
                manager.cancel(session, "job-1")

        worker = make_worker(session_factory, ledger, FakeInference(on_call=request_cancel))

        await worker.process_next()

        item = get_item(session_factory)
        assert item.status == STATUS_COMPLETED
        assert item.cancel_requested
        assert free_tickets(session_factory) == 2


class TestStaleRecovery:
    def _claim_long_ago(self, session_factory):
        with session_factory() as session:
            assert queue_store.claim_item(session, "job-1", now=utcnow() - timedelta(minutes=10))

    def test_stale_item_returns_to_pending(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        self._claim_long_ago(session_factory)
        worker = make_worker(session_factory, ledger, FakeInference())

        assert worker.recover_stale() == 1

        item = get_item(session_factory)
        assert item.status == STATUS_PENDING
        assert item.retry_count == 1
        assert free_tickets(session_factory) == 2

    def test_stale_item_without_retries_fails_and_refunds(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        self._claim_long_ago(session_factory)
        worker = make_worker(session_factory, ledger, FakeInference(), max_retries=0)

        worker.recover_stale()

        item = get_item(session_factory)
        assert item.status == STATUS_FAILED
        assert free_tickets(session_factory) == 3

    def test_recent_processing_item_is_left_alone(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        with session_factory() as session:
            queue_store.claim_item(session, "job-1")
        worker = make_worker(session_factory, ledger, FakeInference())

        assert worker.recover_stale() == 0
        assert get_item(session_factory).status == STATUS_PROCESSING


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_until_stopped(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        worker = make_worker(session_factory, ledger, FakeInference())

        task = asyncio.create_task(worker.run())
        for _ in range(200):
            if get_item(session_factory).status == STATUS_COMPLETED:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert get_item(session_factory).status == STATUS_COMPLETED
        assert worker.get_stats()["running"] is False


class TestClaimFencing:
    @pytest.mark.asyncio
    async def test_long_multi_garment_job_is_not_recovered_by_another_worker(
        self, session_factory, ledger, manager, monkeypatch
    ):
        enqueue_charged(session_factory, ledger, manager, garments=3)
        clock = {"now": utcnow()}
        monkeypatch.setattr(queue_store, "utcnow", lambda: clock["now"])
        monkeypatch.setattr(job_worker, "utcnow", lambda: clock["now"])

        other_inference = FakeInference()
        other = make_worker(session_factory, ledger, other_inference, stale_job_timeout=300)
        recovered = []

        def slow_garment(call_number):
            # 의상당 200초, 세 벌 합계는 stale 기준 300초를 넘김
            clock["now"] += timedelta(seconds=200)
            recovered.append(other.recover_stale())

        inference = FakeInference(on_call=slow_garment)
        worker = make_worker(session_factory, ledger, inference, stale_job_timeout=300)

        await worker.process_next()

        assert recovered == [0, 0, 0]
        assert await other.run_once() == 0
        assert len(inference.calls) == 3
        assert other_inference.calls == []

        item = get_item(session_factory)
        assert item.status == STATUS_COMPLETED
        assert item.retry_count == 0
        assert len(item.result_data["results"]) == 3
        assert free_tickets(session_factory) == 2

    @pytest.mark.asyncio
    async def test_run_stops_when_item_is_reclaimed(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager, garments=2)

        def reclaim(call_number):
            with session_factory() as session:
                assert queue_store.schedule_retry(session, "job-1", 0, utcnow(), STALE_ERROR)
                assert queue_store.claim_item(session, "job-1")

        inference = FakeInference(on_call=reclaim)
        worker = make_worker(session_factory, ledger, inference)

        await worker.process_next()

        assert len(inference.calls) == 1
        item = get_item(session_factory)
        assert item.status == STATUS_PROCESSING
        assert item.retry_count == 1
        assert item.result_data is None
        assert worker.get_stats()["processed_count"] == 0

    @pytest.mark.asyncio
    async def test_failure_of_superseded_attempt_is_ignored(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)

        def reclaim(call_number):
            with session_factory() as session:
                queue_store.schedule_retry(session, "job-1", 0, utcnow(), STALE_ERROR)
                queue_store.claim_item(session, "job-1")

        inference = FakeInference([InferenceError("bad image", retryable=False)], on_call=reclaim)
        worker = make_worker(session_factory, ledger, inference, max_retries=0)

        await worker.process_next()

        item = get_item(session_factory)
        assert item.status == STATUS_PROCESSING
        assert item.retry_count == 1
        assert free_tickets(session_factory) == 2
        assert worker.get_stats()["failed_count"] == 0


class TestRefundReconciliation:
    @pytest.mark.asyncio
    async def test_interrupted_refund_is_reconciled_once(self, session_factory, ledger, manager, monkeypatch):
        enqueue_charged(session_factory, ledger, manager)
        real_refund = ledger.refund
        calls = []

        def flaky_refund(*args, **kwargs):
            calls.append(kwargs.get("reason"))
            if len(calls) == 1:
                raise OperationalError("UPDATE credit_accounts", {}, Exception("database is locked"))
            return real_refund(*args, **kwargs)

        monkeypatch.setattr(ledger, "refund", flaky_refund)
        inference = FakeInference([InferenceError("bad image", retryable=False)])
        worker = make_worker(session_factory, ledger, inference)

        await worker.process_next()

        assert get_item(session_factory).status == STATUS_FAILED
        assert free_tickets(session_factory) == 2

        assert await worker.run_once() == 0
        assert free_tickets(session_factory) == 3
        assert calls == ["job_failed", "job_failed"]

        assert worker.reconcile_refunds() == 0
        assert free_tickets(session_factory) == 3

    def test_canceled_item_is_reconciled_with_cancel_reason(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager)
        with session_factory() as session:
            assert queue_store.cancel_pending_item(session, "job-1")
        worker = make_worker(session_factory, ledger, FakeInference())

        assert worker.reconcile_refunds() == 1

        assert free_tickets(session_factory) == 3
        with session_factory() as session:
            refund = ledger.refund(session, "job-1")
        assert refund.replayed
