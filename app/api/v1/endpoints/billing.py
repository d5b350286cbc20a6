"""
과금 API 엔드포인트

비즈니스 로직:
- 잔액 조회 (소비자 버킷별 / 스토어 B2B)
- 결제 웹훅 충전, 구독 갱신/해지 (웹훅 시크릿 필요)
- 스토어 무료 티켓 설정 조회/변경 (변경은 해당 스토어 토큰 필요)
- 크레딧 트랜잭션 내역 (최신순)
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
import logging

from app.api.deps import get_ledger
from app.core.auth import get_current_store, require_webhook_secret
from app.core.credits import AccountRef, CreditLedger, SOURCE_PAID, SOURCE_STORE
from app.core.database import get_db
from app.core.errors import ErrorKind, api_error
from app.schemas.credits import (
    BalanceResponse,
    CreditOperationResponse,
    CreditTransactionListResponse,
    CreditTransactionResponse,
    StoreSettingsResponse,
    StoreSettingsUpdateRequest,
    SubscriptionAction,
    SubscriptionRequest,
    TopupRequest,
)
from app.utils.time_utils import to_naive_utc

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_TRANSACTION_PAGE = 100


def _query_ref(
    storeId: Optional[str] = Query(None),
    customerId: Optional[str] = Query(None),
    lineUserId: Optional[str] = Query(None),
    chargeStore: bool = Query(False, description="True면 스토어 B2B 계정"),
) -> AccountRef:
    return AccountRef(
        store_id=storeId,
        customer_id=customerId,
        line_user_id=lineUserId,
        charge_store=chargeStore,
    )


@router.get("/balance", response_model=BalanceResponse, response_model_exclude_none=True)
def get_balance(
    ref: AccountRef = Depends(_query_ref),
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    view, error_kind = ledger.get_balance(db, ref)
    if error_kind:
        raise api_error(error_kind)
    return BalanceResponse(kind=view.kind, accountId=view.account_id, **view.data)


@router.post("/topup", response_model=CreditOperationResponse, dependencies=[Depends(require_webhook_secret)])
def topup(
    request: TopupRequest,
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    """결제 완료 웹훅: 크레딧 충전"""
    bucket = request.bucket or (SOURCE_STORE if request.chargeStore else SOURCE_PAID)
    result = ledger.apply_credit(
        db,
        request.account_ref(),
        amount=request.amount,
        bucket=bucket,
        external_id=request.externalId,
        note=request.note,
    )
    if not result.success:
        raise api_error(result.error_kind)

    return CreditOperationResponse(
        transactionId=result.transaction_id,
        balance=result.balance,
        replayed=result.replayed,
    )


@router.post("/subscription", response_model=CreditOperationResponse, dependencies=[Depends(require_webhook_secret)])
def update_subscription(
    request: SubscriptionRequest,
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    """구독 갱신 / 해지"""
    ref = request.account_ref()

    if request.action == SubscriptionAction.RENEW:
        if request.planCredits is None or request.periodEnd is None:
            raise api_error(ErrorKind.INVALID_REQUEST, "planCredits and periodEnd are required for renew")
        result = ledger.renew_subscription(
            db,
            ref,
            plan_credits=request.planCredits,
            period_end=to_naive_utc(request.periodEnd),
            external_id=request.externalId,
        )
    else:
        result = ledger.cancel_subscription(db, ref)

    if not result.success:
        raise api_error(result.error_kind)

    return CreditOperationResponse(
        transactionId=result.transaction_id,
        balance=result.balance,
        replayed=result.replayed,
    )


@router.get("/settings", response_model=StoreSettingsResponse)
def get_store_settings(
    storeId: str = Query(..., description="스토어 ID"),
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    store_settings = ledger.get_store_settings(db, storeId)
    db.commit()
    return StoreSettingsResponse(
        storeId=storeId,
        dailyTryonLimit=store_settings.daily_free_limit,
        freeResetHour=store_settings.free_reset_hour,
    )


@router.patch("/settings", response_model=StoreSettingsResponse)
def update_store_settings(
    request: StoreSettingsUpdateRequest,
    current_store: str = Depends(get_current_store),
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    """스토어 무료 티켓 설정 변경 (다음 리셋부터 적용)"""
    if current_store != request.storeId:
        logger.warning(f"Store {current_store} tried to update settings of {request.storeId}")
        raise api_error(ErrorKind.AUTH_REQUIRED, status_code=403)

    try:
        store_settings = ledger.update_store_settings(
            db,
            request.storeId,
            daily_tryon_limit=request.dailyTryonLimit,
            free_reset_hour=request.freeResetHour,
        )
    except ValueError as e:
        raise api_error(ErrorKind.INVALID_REQUEST, str(e), status_code=422)

    return StoreSettingsResponse(
        storeId=request.storeId,
        dailyTryonLimit=store_settings.daily_free_limit,
        freeResetHour=store_settings.free_reset_hour,
    )


@router.get("/transactions", response_model=CreditTransactionListResponse)
def get_transactions(
    ref: AccountRef = Depends(_query_ref),
    limit: int = Query(20, ge=1, description="최대 100건"),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    transactions, total, error_kind = ledger.list_transactions(
        db, ref, limit=min(limit, MAX_TRANSACTION_PAGE), offset=offset
    )
    if error_kind:
        raise api_error(error_kind)

    return CreditTransactionListResponse(
        transactions=[
            CreditTransactionResponse(
                id=tx.id,
                kind=tx.kind,
                source=tx.source,
                amount=tx.amount,
                linkedJobId=tx.linked_job_id,
                balanceAfter=tx.balance_after,
                note=tx.note,
                createdAt=tx.created_at,
            )
            for tx in transactions
        ],
        totalCount=total,
        hasMore=offset + len(transactions) < total,
    )
