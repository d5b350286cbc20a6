"""
VTON 큐 API 엔드포인트

비즈니스 로직:
- 접수: 크레딧 확인/차감 → 같은 작업 ID로 큐 등록 (등록 실패 시 차감 보상 환불)
- 상태 조회: 대기 순번/예상 대기시간은 조회 시점 기준으로 계산
- 취소: pending만 가능, 환불 포함
- 목록: ownerId 지정 시 해당 소유자의 최근 50건, 미지정 시 큐 통계
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional, Union
import logging

from app.api.deps import get_ledger, get_queue_manager
from app.core.credits import CreditLedger
from app.core.database import get_db
from app.core.errors import ErrorKind, api_error
from app.crud.queue import generate_queue_id
from app.schemas.queue import (
    QueueAddRequest,
    QueueAddResponse,
    QueueCancelResponse,
    QueueItemResponse,
    QueueListResponse,
    QueueStats,
    QueueStatsResponse,
    QueueStatusResponse,
)
from app.services.queue_manager import QueueManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=QueueAddResponse)
def add_to_queue(
    request: QueueAddRequest,
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
    manager: QueueManager = Depends(get_queue_manager),
):
    """시착 작업 접수 (크레딧 1 차감)"""
    queue_id = request.queueId or generate_queue_id()
    ref = request.account_ref()
    account_key, error_kind = ref.resolve()
    if error_kind:
        raise api_error(error_kind)

    # 다른 계정의 작업 ID는 차감 전에 거절
    if request.queueId and manager.is_taken_by_other(db, queue_id, account_key):
        logger.warning(f"Rejected queue request {queue_id}: id already used by another account")
        raise api_error(ErrorKind.INVALID_STATE)

    deduct = ledger.check_and_deduct(db, ref, queue_id)
    if not deduct.allowed:
        logger.info(f"Rejected queue request {queue_id}: {deduct.error_kind.value}")
        raise api_error(deduct.error_kind, deduct.error_message)

    try:
        position = manager.add(
            db,
            payload=request.payload.model_dump(mode="json"),
            owner_id=request.ownerId or ref.owner_id,
            queue_id=queue_id,
            store_id=request.storeId,
            account_key=account_key,
            credit_source=deduct.source,
            credit_transaction_id=deduct.transaction_id,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to enqueue job {queue_id} after debit, refunding: {str(e)}")
        ledger.refund(db, queue_id, reason="enqueue_failed", transaction_id=deduct.transaction_id)
        raise api_error(ErrorKind.STORAGE_ERROR)

    if position.conflict:
        # 동시 요청으로 다른 계정이 먼저 등록한 경우
        ledger.refund(db, queue_id, reason="queue_id_conflict", transaction_id=deduct.transaction_id)
        raise api_error(ErrorKind.INVALID_STATE)

    return QueueAddResponse(
        queueId=position.queue_id,
        position=position.position,
        itemsAhead=position.items_ahead,
        estimatedWaitTime=position.estimated_wait_time,
        creditSource=deduct.source,
    )


@router.get("", response_model=Union[QueueListResponse, QueueStatsResponse])
def get_queue_overview(
    ownerId: Optional[str] = Query(None, description="소유자 ID (지정 시 최근 작업 목록)"),
    db: Session = Depends(get_db),
    manager: QueueManager = Depends(get_queue_manager),
):
    """소유자별 작업 목록 또는 큐 통계"""
    if ownerId:
        views = manager.list_for_owner(db, ownerId)
        return QueueListResponse(items=[QueueItemResponse.from_view(view) for view in views])

    stats = manager.stats(db)
    return QueueStatsResponse(
        stats=QueueStats(
            pendingCount=stats.pending_count,
            processingCount=stats.processing_count,
            estimatedWaitTime=stats.estimated_wait_time,
        )
    )


@router.get("/{queue_id}", response_model=QueueStatusResponse)
def get_queue_status(
    queue_id: str,
    db: Session = Depends(get_db),
    manager: QueueManager = Depends(get_queue_manager),
):
    view, error_kind = manager.get_status(db, queue_id)
    if error_kind:
        raise api_error(error_kind)
    return QueueStatusResponse(item=QueueItemResponse.from_view(view))


@router.delete("/{queue_id}", response_model=QueueCancelResponse)
def cancel_queue_item(
    queue_id: str,
    db: Session = Depends(get_db),
    manager: QueueManager = Depends(get_queue_manager),
):
    """대기 중 작업 취소 (처리 중이면 409, 이후 재시도만 중단)"""
    result = manager.cancel(db, queue_id)
    if not result.ok:
        raise api_error(result.error_kind)
    return QueueCancelResponse(queueId=queue_id, refunded=result.refunded)
