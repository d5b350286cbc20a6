"""
크레딧 / 과금 관련 Pydantic 스키마

비즈니스 로직:
- 잔액 조회 응답 (소비자 버킷별 / 스토어 B2B 잔액)
- 충전 웹훅, 구독 갱신/해지 요청
- 스토어 무료 티켓 설정 (범위 밖 값은 보정하지 않고 422)
- 크레딧 트랜잭션 내역 응답
"""

from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum

from app.core.credits import AccountRef, DAILY_LIMIT_RANGE, RESET_HOUR_RANGE


class AccountRefFields(BaseModel):
    """과금 계정 지정 필드"""
    customerId: Optional[str] = None
    lineUserId: Optional[str] = None
    storeId: Optional[str] = None
    chargeStore: bool = False

    def account_ref(self) -> AccountRef:
        return AccountRef(
            store_id=self.storeId,
            customer_id=self.customerId,
            line_user_id=self.lineUserId,
            charge_store=self.chargeStore,
        )


class BalanceResponse(BaseModel):
    """잔액 조회 응답 (kind에 따라 채워지는 필드가 다름)"""
    success: bool = True
    kind: str
    accountId: str
    # 소비자
    freeTickets: Optional[int] = None
    dailyFreeLimit: Optional[int] = None
    resetAt: Optional[datetime] = None
    paidCredits: Optional[int] = None
    subscriptionCredits: Optional[int] = None
    subscriptionStatus: Optional[str] = None
    subscriptionPeriodEnd: Optional[datetime] = None
    totalCredits: Optional[int] = None
    # 스토어
    balance: Optional[int] = None
    totalPurchased: Optional[int] = None
    totalConsumed: Optional[int] = None


class TopupRequest(AccountRefFields):
    """결제 완료 웹훅"""
    amount: int = Field(..., gt=0, description="지급 크레딧 수")
    bucket: Optional[str] = Field(None, description="지급 버킷 (기본: 소비자 paid / 스토어 store_b2b)")
    externalId: Optional[str] = Field(None, description="결제 ID (중복 웹훅 멱등 키)")
    note: Optional[str] = None


class CreditOperationResponse(BaseModel):
    success: bool = True
    transactionId: Optional[str] = None
    balance: Optional[int] = None
    replayed: bool = False


class SubscriptionAction(str, Enum):
    RENEW = "renew"
    CANCEL = "cancel"


class SubscriptionRequest(AccountRefFields):
    action: SubscriptionAction
    planCredits: Optional[int] = Field(None, ge=0, description="플랜 지급 크레딧 (renew)")
    periodEnd: Optional[datetime] = Field(None, description="새 구독 종료 시각 (renew)")
    externalId: Optional[str] = None


class StoreSettingsUpdateRequest(BaseModel):
    storeId: str
    dailyTryonLimit: Optional[int] = Field(None, ge=DAILY_LIMIT_RANGE[0], le=DAILY_LIMIT_RANGE[1])
    freeResetHour: Optional[int] = Field(None, ge=RESET_HOUR_RANGE[0], le=RESET_HOUR_RANGE[1])


class StoreSettingsResponse(BaseModel):
    success: bool = True
    storeId: str
    dailyTryonLimit: int
    freeResetHour: int


class CreditTransactionResponse(BaseModel):
    """크레딧 트랜잭션 개별 응답"""
    id: str
    kind: str
    source: str
    amount: int
    linkedJobId: Optional[str] = None
    balanceAfter: Optional[int] = None
    note: Optional[str] = None
    createdAt: datetime


class CreditTransactionListResponse(BaseModel):
    """크레딧 트랜잭션 목록 응답"""
    success: bool = True
    transactions: List[CreditTransactionResponse]
    totalCount: int
    hasMore: bool
