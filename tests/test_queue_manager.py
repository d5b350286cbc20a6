"""
큐 매니저 / 큐 저장소 테스트
"""

from datetime import timedelta

from app.core.credits import AccountRef
from app.core.errors import ErrorKind
from app.crud import queue as queue_store
from app.models.database import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING
from app.utils.time_utils import utcnow

from conftest import load_account, sample_payload

CONSUMER = AccountRef(customer_id="cust-1")


def enqueue(session_factory, manager, queue_id, owner_id="cust-1"):
    with session_factory() as session:
        return manager.add(session, sample_payload(), owner_id, queue_id=queue_id)


def enqueue_charged(session_factory, ledger, manager, queue_id, ref=CONSUMER):
    with session_factory() as session:
        deduct = ledger.check_and_deduct(session, ref, queue_id)
        assert deduct.allowed
        return manager.add(
            session,
            sample_payload(),
            ref.owner_id,
            queue_id=queue_id,
            credit_source=deduct.source,
            credit_transaction_id=deduct.transaction_id,
        )


def complete(session_factory, queue_id, total_ms):
    with session_factory() as session:
        assert queue_store.claim_item(session, queue_id)
        assert queue_store.complete_item(session, queue_id, {"results": [], "totalProcessingTime": total_ms})


class TestAdd:
    def test_fifo_position_and_wait(self, session_factory, manager):
        """앞선 pending 1건 → 순번 1, 대기 30초"""
        first = enqueue(session_factory, manager, "job-1")
        second = enqueue(session_factory, manager, "job-2")

        assert (first.position, first.items_ahead, first.estimated_wait_time) == (0, 0, 0)
        assert (second.position, second.items_ahead, second.estimated_wait_time) == (1, 1, 30)

    def test_same_queue_id_returns_existing_item(self, session_factory, manager):
        enqueue(session_factory, manager, "job-1")
        enqueue(session_factory, manager, "job-2")
        again = enqueue(session_factory, manager, "job-1")

        assert again.queue_id == "job-1"
        assert again.position == 0
        with session_factory() as session:
            assert manager.stats(session).pending_count == 2

    def test_queue_id_owned_by_another_account_conflicts(self, session_factory, manager):
        with session_factory() as session:
            manager.add(session, sample_payload(), "alice", queue_id="shared", account_key="customer:alice")

        with session_factory() as session:
            position = manager.add(session, sample_payload(), "bob", queue_id="shared", account_key="customer:bob")
            assert manager.is_taken_by_other(session, "shared", "customer:bob")
            assert not manager.is_taken_by_other(session, "shared", "customer:alice")
            assert not manager.is_taken_by_other(session, "unused", "customer:bob")
            item = queue_store.get_queue_item(session, "shared")
            session.commit()

        assert position.conflict
        assert item.owner_id == "alice"

    def test_generated_queue_id(self, session_factory, manager):
        with session_factory() as session:
            position = manager.add(session, sample_payload(), "cust-1")
        assert position.queue_id
        assert len(position.queue_id) == 36


class TestStatus:
    def test_position_updates_as_queue_drains(self, session_factory, manager):
        for queue_id in ("job-1", "job-2", "job-3"):
            enqueue(session_factory, manager, queue_id)

        with session_factory() as session:
            assert queue_store.claim_item(session, "job-1")

        with session_factory() as session:
            view, error_kind = manager.get_status(session, "job-3")

        assert error_kind is None
        assert view.status == STATUS_PENDING
        assert view.items_ahead == 1
        assert view.estimated_wait_time == 30

    def test_non_pending_item_has_no_position(self, session_factory, manager):
        enqueue(session_factory, manager, "job-1")
        with session_factory() as session:
            queue_store.claim_item(session, "job-1")

        with session_factory() as session:
            view, _ = manager.get_status(session, "job-1")

        assert view.status == STATUS_PROCESSING
        assert (view.position, view.items_ahead, view.estimated_wait_time) == (0, 0, 0)

    def test_unknown_item(self, session_factory, manager):
        with session_factory() as session:
            view, error_kind = manager.get_status(session, "missing")
        assert view is None
        assert error_kind == ErrorKind.NOT_FOUND

    def test_list_for_owner_newest_first(self, session_factory, manager):
        now = utcnow()
        with session_factory() as session:
            queue_store.create_queue_item(session, "old", sample_payload(), owner_id="U1", now=now - timedelta(minutes=5))
            queue_store.create_queue_item(session, "new", sample_payload(), owner_id="U1", now=now)
            queue_store.create_queue_item(session, "other", sample_payload(), owner_id="U2", now=now)

        with session_factory() as session:
            views = manager.list_for_owner(session, "U1")

        assert [view.id for view in views] == ["new", "old"]


class TestStats:
    def test_wait_counts_pending_and_processing(self, session_factory, manager):
        for queue_id in ("job-1", "job-2", "job-3"):
            enqueue(session_factory, manager, queue_id)
        with session_factory() as session:
            queue_store.claim_item(session, "job-1")

        with session_factory() as session:
            stats = manager.stats(session)

        assert (stats.pending_count, stats.processing_count) == (2, 1)
        assert stats.estimated_wait_time == 90

    def test_average_from_completed_items(self, session_factory, manager):
        enqueue(session_factory, manager, "done-1")
        enqueue(session_factory, manager, "done-2")
        complete(session_factory, "done-1", 10000)
        complete(session_factory, "done-2", 20000)
        enqueue(session_factory, manager, "job-1")

        with session_factory() as session:
            assert manager.average_processing_time(session) == 15.0
            session.commit()
        with session_factory() as session:
            stats = manager.stats(session)

        assert stats.pending_count == 1
        assert stats.estimated_wait_time == 15

    def test_default_average_without_samples(self, session_factory, manager):
        with session_factory() as session:
            assert manager.average_processing_time(session) == 30
            session.commit()


class TestCancel:
    def test_cancel_pending_refunds_once(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager, "job-1")
        assert load_account(session_factory, CONSUMER).free_tickets_remaining == 2

        with session_factory() as session:
            result = manager.cancel(session, "job-1")
        assert result.ok
        assert result.refunded
        assert load_account(session_factory, CONSUMER).free_tickets_remaining == 3

        with session_factory() as session:
            view, _ = manager.get_status(session, "job-1")
        assert view.status == STATUS_FAILED
        assert view.error_message == queue_store.CANCELED_MESSAGE

        with session_factory() as session:
            again = manager.cancel(session, "job-1")
        assert not again.ok
        assert again.error_kind == ErrorKind.INVALID_STATE
        assert load_account(session_factory, CONSUMER).free_tickets_remaining == 3

    def test_cancel_completed_is_rejected_without_refund(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager, "job-1")
        complete(session_factory, "job-1", 1000)

        with session_factory() as session:
            result = manager.cancel(session, "job-1")

        assert result.error_kind == ErrorKind.INVALID_STATE
        assert not result.refunded
        assert load_account(session_factory, CONSUMER).free_tickets_remaining == 2

    def test_cancel_processing_only_marks_request(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager, "job-1")
        with session_factory() as session:
            queue_store.claim_item(session, "job-1")

        with session_factory() as session:
            result = manager.cancel(session, "job-1")

        assert result.error_kind == ErrorKind.INVALID_STATE
        assert result.cancel_requested
        with session_factory() as session:
            view, _ = manager.get_status(session, "job-1")
        assert view.status == STATUS_PROCESSING
        assert view.cancel_requested
        assert load_account(session_factory, CONSUMER).free_tickets_remaining == 2

    def test_cancel_unknown_item(self, session_factory, manager):
        with session_factory() as session:
            result = manager.cancel(session, "missing")
        assert result.error_kind == ErrorKind.NOT_FOUND


class TestQueueStore:
    def test_claim_is_exclusive(self, session_factory, manager):
        enqueue(session_factory, manager, "job-1")

        with session_factory() as first, session_factory() as second:
            assert queue_store.claim_item(first, "job-1")
            assert not queue_store.claim_item(second, "job-1")

    def test_retry_backoff_hides_item_until_due(self, session_factory, manager):
        enqueue(session_factory, manager, "job-1")
        now = utcnow()

        with session_factory() as session:
            queue_store.claim_item(session, "job-1", now=now)
            assert queue_store.schedule_retry(session, "job-1", 0, now + timedelta(seconds=10), "temporary")

        with session_factory() as session:
            assert queue_store.find_claimable_ids(session, 5, now=now) == []
            assert queue_store.find_claimable_ids(session, 5, now=now + timedelta(seconds=11)) == ["job-1"]
            session.commit()

    def test_schedule_retry_requires_matching_count(self, session_factory, manager):
        enqueue(session_factory, manager, "job-1")
        with session_factory() as session:
            queue_store.claim_item(session, "job-1")
            assert not queue_store.schedule_retry(session, "job-1", 3, utcnow(), "stale count")

    def test_completed_item_cannot_transition(self, session_factory, manager):
        enqueue(session_factory, manager, "job-1")
        complete(session_factory, "job-1", 1000)

        with session_factory() as session:
            assert not queue_store.fail_item(session, "job-1", "late failure")
            assert not queue_store.cancel_pending_item(session, "job-1")
            item = queue_store.get_queue_item(session, "job-1")
            session.commit()

        assert item.status == STATUS_COMPLETED
        assert item.error_message is None

    def test_heartbeat_and_completion_require_same_attempt(self, session_factory, manager):
        enqueue(session_factory, manager, "job-1")
        started = utcnow() - timedelta(minutes=10)

        with session_factory() as session:
            queue_store.claim_item(session, "job-1", now=started)
            assert queue_store.heartbeat(session, "job-1", 0)
            assert queue_store.find_stale_processing(session, utcnow() - timedelta(minutes=1)) == []
            session.commit()

            # 다른 시도로 다시 점유됨
            assert queue_store.schedule_retry(session, "job-1", 0, utcnow(), "stale")
            assert queue_store.claim_item(session, "job-1")

            assert not queue_store.heartbeat(session, "job-1", 0)
            assert not queue_store.complete_item(session, "job-1", {"results": []}, expected_retry_count=0)
            assert not queue_store.fail_item(session, "job-1", "late failure", expected_retry_count=0)
            assert queue_store.complete_item(session, "job-1", {"results": []}, expected_retry_count=1)

    def test_unrefunded_failures_are_listed_until_refunded(self, session_factory, ledger, manager):
        enqueue_charged(session_factory, ledger, manager, "job-1")
        # 같은 작업 ID의 다른 계정 환불 기록은 이 아이템의 환불로 보지 않음
        other = AccountRef(customer_id="cust-2")
        with session_factory() as session:
            other_debit = ledger.check_and_deduct(session, other, "job-1")
        with session_factory() as session:
            ledger.refund(session, "job-1", transaction_id=other_debit.transaction_id)

        with session_factory() as session:
            queue_store.claim_item(session, "job-1")
            queue_store.fail_item(session, "job-1", "failed")
            pending = [item.id for item in queue_store.find_unrefunded_failures(session, 10)]
            session.commit()
        assert pending == ["job-1"]

        with session_factory() as session:
            item = queue_store.get_queue_item(session, "job-1")
            ledger.refund(session, "job-1", transaction_id=item.credit_transaction_id)
        with session_factory() as session:
            assert queue_store.find_unrefunded_failures(session, 10) == []
            session.commit()
