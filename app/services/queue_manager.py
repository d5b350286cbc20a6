"""
VTON 큐 매니저

비즈니스 로직:
- 신규 작업 접수, 실시간 대기 순번/예상 대기시간 계산, 상태 조회, 취소 담당
- 크레딧 확인(입장 제어)은 호출자 책임, 큐 매니저는 접수만 수행
- 순번은 pending 아이템 중 (created_at, id) 기준 엄격 FIFO, 보고용이며 완료 순서를 보장하지 않음
- pending 취소 시 원장 환불까지 처리
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.credits import CreditLedger
from app.core.errors import ErrorKind
from app.crud import queue as queue_store
from app.models.database import QueueItem, STATUS_PENDING, STATUS_PROCESSING, STATUS_FAILED

logger = logging.getLogger(__name__)


@dataclass
class QueuePosition:
    """접수 결과"""
    queue_id: str
    position: int
    items_ahead: int
    estimated_wait_time: int
    # 같은 ID가 다른 계정의 작업으로 이미 존재
    conflict: bool = False


@dataclass
class QueueItemView:
    """상태 조회 응답용 아이템 뷰 (순번 관련 필드는 조회 시점에 계산)"""
    id: str
    status: str
    position: int
    items_ahead: int
    estimated_wait_time: int
    result_data: Optional[Dict[str, Any]]
    error_message: Optional[str]
    retry_count: int
    owner_id: Optional[str]
    cancel_requested: bool
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]


@dataclass
class QueueStats:
    pending_count: int
    processing_count: int
    estimated_wait_time: int


@dataclass
class CancelResult:
    ok: bool
    error_kind: Optional[ErrorKind] = None
    refunded: bool = False
    cancel_requested: bool = False


class QueueManager:
    """큐 공개 진입점"""

    def __init__(
        self,
        ledger: Optional[CreditLedger] = None,
        average_processing_seconds: Optional[float] = None,
        sample_size: Optional[int] = None,
    ):
        self.ledger = ledger
        self.default_processing_seconds = (
            settings.AVERAGE_PROCESSING_SECONDS if average_processing_seconds is None else average_processing_seconds
        )
        self.sample_size = settings.AVERAGE_SAMPLE_SIZE if sample_size is None else sample_size

    def add(
        self,
        db: Session,
        payload: Dict[str, Any],
        owner_id: Optional[str],
        queue_id: Optional[str] = None,
        store_id: Optional[str] = None,
        account_key: Optional[str] = None,
        credit_source: Optional[str] = None,
        credit_transaction_id: Optional[str] = None,
    ) -> QueuePosition:
        """작업 접수 (같은 계정의 같은 queue_id 재요청은 기존 아이템의 순번 반환)

        다른 계정이 이미 쓴 queue_id면 기존 아이템을 노출하지 않고 conflict=True 반환
        """
        queue_id = queue_id or queue_store.generate_queue_id()

        item = queue_store.create_queue_item(
            db,
            queue_id=queue_id,
            payload=payload,
            owner_id=owner_id,
            store_id=store_id,
            account_key=account_key,
            credit_source=credit_source,
            credit_transaction_id=credit_transaction_id,
        )
        if item.account_key != account_key:
            db.commit()
            logger.warning(f"Queue id {queue_id} already belongs to another account")
            return QueuePosition(queue_id=queue_id, position=0, items_ahead=0, estimated_wait_time=0, conflict=True)

        view = self._to_view(db, item)
        db.commit()

        logger.info(f"Enqueued job {item.id} for owner {owner_id} (items ahead: {view.items_ahead})")
        return QueuePosition(
            queue_id=item.id,
            position=view.position,
            items_ahead=view.items_ahead,
            estimated_wait_time=view.estimated_wait_time,
        )

    def is_taken_by_other(self, db: Session, queue_id: str, account_key: Optional[str]) -> bool:
        """queue_id가 다른 계정의 아이템으로 이미 존재하는지 (차감 전 확인용)"""
        item = queue_store.get_queue_item(db, queue_id)
        db.commit()
        return item is not None and item.account_key != account_key

    def get_status(self, db: Session, queue_id: str) -> Tuple[Optional[QueueItemView], Optional[ErrorKind]]:
        item = queue_store.get_queue_item(db, queue_id)
        if not item:
            db.commit()
            return None, ErrorKind.NOT_FOUND
        view = self._to_view(db, item)
        # 읽기 트랜잭션 종료
        db.commit()
        return view, None

    def list_for_owner(self, db: Session, owner_id: str, limit: int = 50) -> List[QueueItemView]:
        views = [self._to_view(db, item) for item in queue_store.list_owner_items(db, owner_id, limit)]
        db.commit()
        return views

    def cancel(self, db: Session, queue_id: str) -> CancelResult:
        """pending 아이템 취소 및 환불

        비즈니스 로직:
        - pending: failed("canceled")로 전이하고 1회 환불
        - processing: 취소 요청만 기록 (진행 중 추론은 끝까지, 이후 재시도 없음), 호출자에는 INVALID_STATE
        - completed / failed: INVALID_STATE, 추가 환불 없음
        """
        item = queue_store.get_queue_item(db, queue_id)
        if not item:
            db.commit()
            return CancelResult(ok=False, error_kind=ErrorKind.NOT_FOUND)

        if item.status == STATUS_PENDING:
            if queue_store.cancel_pending_item(db, queue_id):
                refunded = self._refund(db, queue_id, "canceled", item.credit_transaction_id)
                logger.info(f"Canceled pending job {queue_id}")
                return CancelResult(ok=True, refunded=refunded)
            # 워커가 방금 가져간 경우
            item = queue_store.get_queue_item(db, queue_id)

        if item.status == STATUS_PROCESSING:
            requested = queue_store.request_cancel(db, queue_id)
            logger.info(f"Cancel requested for processing job {queue_id}")
            return CancelResult(ok=False, error_kind=ErrorKind.INVALID_STATE, cancel_requested=requested)

        if item.status == STATUS_FAILED and item.error_message == queue_store.CANCELED_MESSAGE:
            # 이전 취소의 환불이 중단됐을 수 있으므로 멱등 환불로 보정
            self._refund(db, queue_id, "canceled", item.credit_transaction_id)

        db.commit()
        return CancelResult(ok=False, error_kind=ErrorKind.INVALID_STATE)

    def stats(self, db: Session) -> QueueStats:
        pending = queue_store.count_by_status(db, STATUS_PENDING)
        processing = queue_store.count_by_status(db, STATUS_PROCESSING)
        average = self.average_processing_time(db)
        db.commit()
        return QueueStats(
            pending_count=pending,
            processing_count=processing,
            estimated_wait_time=int(round((pending + processing) * average)),
        )

    def average_processing_time(self, db: Session) -> float:
        """최근 완료 아이템 평균 처리 시간(초), 표본이 없으면 설정 기본값"""
        samples = queue_store.recent_processing_times(db, self.sample_size)
        if not samples:
            return self.default_processing_seconds
        return sum(samples) / len(samples) / 1000.0

    def _refund(self, db: Session, queue_id: str, reason: str, transaction_id: Optional[str]) -> bool:
        if not self.ledger:
            return False
        result = self.ledger.refund(db, queue_id, reason=reason, transaction_id=transaction_id)
        return result.refunded

    def _to_view(self, db: Session, item: QueueItem) -> QueueItemView:
        items_ahead = 0
        estimated_wait_time = 0
        if item.status == STATUS_PENDING:
            items_ahead = queue_store.count_items_ahead(db, item)
            estimated_wait_time = int(round(items_ahead * self.average_processing_time(db)))

        return QueueItemView(
            id=item.id,
            status=item.status,
            position=items_ahead,
            items_ahead=items_ahead,
            estimated_wait_time=estimated_wait_time,
            result_data=item.result_data,
            error_message=item.error_message,
            retry_count=item.retry_count,
            owner_id=item.owner_id,
            cancel_requested=bool(item.cancel_requested),
            created_at=item.created_at,
            updated_at=item.updated_at,
            completed_at=item.completed_at,
        )
