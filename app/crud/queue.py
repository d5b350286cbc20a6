"""
큐 저장소 (Queue Store)

비즈니스 로직:
- queue_items 행의 생성/조회와 상태 전이를 담당
- 모든 상태 전이는 "현재 상태가 X일 때만" 조건부 UPDATE 한 번으로 수행
- 전이 성공 여부는 영향받은 행 수로 판단 (다른 워커가 먼저 가져갔으면 False)
"""

from sqlalchemy.orm import Session, aliased
from sqlalchemy import and_, or_, select, update, func
from sqlalchemy.exc import IntegrityError
from app.models.database import (
    CreditTransaction,
    QueueItem,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_FAILED,
)
from app.core.credits import TX_REFUND
from app.utils.time_utils import utcnow
from typing import Optional, List, Dict, Any
from datetime import datetime
import uuid
import logging

logger = logging.getLogger(__name__)

CANCELED_MESSAGE = "canceled"

def generate_queue_id() -> str:
    """큐 아이템 ID 생성"""
    return str(uuid.uuid4())

def create_queue_item(
    db: Session,
    queue_id: str,
    payload: Dict[str, Any],
    owner_id: Optional[str] = None,
    store_id: Optional[str] = None,
    account_key: Optional[str] = None,
    credit_source: Optional[str] = None,
    credit_transaction_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> QueueItem:
    """pending 상태로 큐 아이템 생성 (같은 ID가 이미 있으면 기존 아이템 반환)"""
    existing = get_queue_item(db, queue_id)
    if existing:
        db.commit()
        return existing

    now = now or utcnow()
    db_item = QueueItem(
        id=queue_id,
        owner_id=owner_id,
        store_id=store_id,
        account_key=account_key,
        status=STATUS_PENDING,
        payload=payload,
        retry_count=0,
        cancel_requested=False,
        credit_source=credit_source,
        credit_transaction_id=credit_transaction_id,
        created_at=now,
        updated_at=now
    )

    try:
        db.add(db_item)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_queue_item(db, queue_id)
        db.commit()
        if existing is None:
            raise
        return existing

    return db_item

def get_queue_item(db: Session, queue_id: str) -> Optional[QueueItem]:
    return db.execute(
        select(QueueItem)
        .where(QueueItem.id == queue_id)
        .execution_options(populate_existing=True)
    ).scalars().first()

def list_owner_items(db: Session, owner_id: str, limit: int = 50) -> List[QueueItem]:
    """소유자의 최근 아이템 (최신순)"""
    return list(db.execute(
        select(QueueItem)
        .where(QueueItem.owner_id == owner_id)
        .order_by(QueueItem.created_at.desc(), QueueItem.id.desc())
        .limit(limit)
    ).scalars().all())

def count_items_ahead(db: Session, item: QueueItem) -> int:
    """(created_at, id) 기준으로 앞선 pending 아이템 수"""
    return db.execute(
        select(func.count(QueueItem.id)).where(
            and_(
                QueueItem.status == STATUS_PENDING,
                or_(
                    QueueItem.created_at < item.created_at,
                    and_(QueueItem.created_at == item.created_at, QueueItem.id < item.id)
                )
            )
        )
    ).scalar_one()

def count_by_status(db: Session, status: str) -> int:
    return db.execute(
        select(func.count(QueueItem.id)).where(QueueItem.status == status)
    ).scalar_one()

def find_claimable_ids(db: Session, limit: int, now: Optional[datetime] = None) -> List[str]:
    """처리 가능한 pending 아이템 ID (재시도 대기 중인 것은 제외, FIFO)"""
    now = now or utcnow()
    return list(db.execute(
        select(QueueItem.id)
        .where(
            and_(
                QueueItem.status == STATUS_PENDING,
                or_(QueueItem.next_retry_at.is_(None), QueueItem.next_retry_at <= now)
            )
        )
        .order_by(QueueItem.created_at, QueueItem.id)
        .limit(limit)
    ).scalars().all())

def find_stale_processing(db: Session, cutoff: datetime) -> List[QueueItem]:
    """cutoff 이전부터 processing에 머물러 있는 아이템"""
    return list(db.execute(
        select(QueueItem).where(
            and_(QueueItem.status == STATUS_PROCESSING, QueueItem.updated_at < cutoff)
        )
    ).scalars().all())

def find_unrefunded_failures(db: Session, limit: int) -> List[QueueItem]:
    """과금됐지만 환불 기록이 없는 failed 아이템 (실패 전이 후 환불이 중단된 경우)"""
    debit = aliased(CreditTransaction)
    refund = aliased(CreditTransaction)
    refunded = (
        select(refund.id)
        .join(debit, debit.account_id == refund.account_id)
        .where(
            and_(
                debit.id == QueueItem.credit_transaction_id,
                refund.linked_job_id == QueueItem.id,
                refund.kind == TX_REFUND
            )
        )
        .exists()
    )
    return list(db.execute(
        select(QueueItem)
        .where(
            and_(
                QueueItem.status == STATUS_FAILED,
                QueueItem.credit_transaction_id.is_not(None),
                ~refunded
            )
        )
        .order_by(QueueItem.completed_at)
        .limit(limit)
    ).scalars().all())

def _attempt_condition(expected_retry_count: Optional[int]):
    if expected_retry_count is None:
        return None
    return QueueItem.retry_count == expected_retry_count

def recent_processing_times(db: Session, limit: int) -> List[float]:
    """최근 완료 아이템의 총 처리 시간(ms)"""
    rows = db.execute(
        select(QueueItem.result_data)
        .where(QueueItem.status == STATUS_COMPLETED)
        .order_by(QueueItem.completed_at.desc())
        .limit(limit)
    ).scalars().all()

    times = []
    for result_data in rows:
        if isinstance(result_data, dict) and result_data.get("totalProcessingTime"):
            times.append(float(result_data["totalProcessingTime"]))
    return times

def _transition(db: Session, queue_id: str, from_status: str, values: Dict[str, Any], extra_condition=None) -> bool:
    """조건부 상태 전이, 반영된 경우에만 True"""
    condition = and_(QueueItem.id == queue_id, QueueItem.status == from_status)
    if extra_condition is not None:
        condition = and_(condition, extra_condition)

    try:
        result = db.execute(
            update(QueueItem)
            .where(condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return result.rowcount == 1

def claim_item(db: Session, queue_id: str, now: Optional[datetime] = None) -> bool:
    """pending → processing (한 워커만 성공)"""
    now = now or utcnow()
    return _transition(db, queue_id, STATUS_PENDING, {
        "status": STATUS_PROCESSING,
        "updated_at": now
    })

def complete_item(
    db: Session,
    queue_id: str,
    result_data: Dict[str, Any],
    now: Optional[datetime] = None,
    expected_retry_count: Optional[int] = None
) -> bool:
    """processing → completed (expected_retry_count가 있으면 같은 시도일 때만)"""
    now = now or utcnow()
    return _transition(db, queue_id, STATUS_PROCESSING, {
        "status": STATUS_COMPLETED,
        "result_data": result_data,
        "error_message": None,
        "next_retry_at": None,
        "completed_at": now,
        "updated_at": now
    }, extra_condition=_attempt_condition(expected_retry_count))

def schedule_retry(
    db: Session,
    queue_id: str,
    current_retry_count: int,
    next_retry_at: datetime,
    error_message: str,
    now: Optional[datetime] = None
) -> bool:
    """processing → pending (retry_count + 1)"""
    now = now or utcnow()
    return _transition(
        db,
        queue_id,
        STATUS_PROCESSING,
        {
            "status": STATUS_PENDING,
            "retry_count": current_retry_count + 1,
            "next_retry_at": next_retry_at,
            "error_message": error_message,
            "updated_at": now
        },
        extra_condition=QueueItem.retry_count == current_retry_count
    )

def fail_item(
    db: Session,
    queue_id: str,
    error_message: str,
    result_data: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    expected_retry_count: Optional[int] = None
) -> bool:
    """processing → failed (expected_retry_count가 있으면 같은 시도일 때만)"""
    now = now or utcnow()
    return _transition(db, queue_id, STATUS_PROCESSING, {
        "status": STATUS_FAILED,
        "error_message": error_message,
        "result_data": result_data,
        "next_retry_at": None,
        "completed_at": now,
        "updated_at": now
    }, extra_condition=_attempt_condition(expected_retry_count))

def heartbeat(db: Session, queue_id: str, retry_count: int, now: Optional[datetime] = None) -> bool:
    """처리 중 점유 갱신 (같은 시도의 processing일 때만 updated_at 갱신)"""
    now = now or utcnow()
    return _transition(db, queue_id, STATUS_PROCESSING, {
        "updated_at": now
    }, extra_condition=QueueItem.retry_count == retry_count)

def cancel_pending_item(db: Session, queue_id: str, now: Optional[datetime] = None) -> bool:
    """pending → failed ("canceled")"""
    now = now or utcnow()
    return _transition(db, queue_id, STATUS_PENDING, {
        "status": STATUS_FAILED,
        "error_message": CANCELED_MESSAGE,
        "cancel_requested": True,
        "next_retry_at": None,
        "completed_at": now,
        "updated_at": now
    })

def request_cancel(db: Session, queue_id: str) -> bool:
    """processing 아이템에 취소 요청 표시 (진행 중 호출은 끝까지 수행)"""
    return _transition(db, queue_id, STATUS_PROCESSING, {
        "cancel_requested": True
    })
