"""
VTON 큐 관련 Pydantic 스키마

비즈니스 로직:
- 요청 payload 검증: personImage 필수, 의상 1~3개, 카테고리 수 = 의상 수
- 응답은 camelCase (프런트엔드 폴링 클라이언트와 동일한 필드명)
"""

from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum

from app.core.credits import AccountRef

MAX_GARMENTS = 3


class VtonCategory(str, Enum):
    UPPER_BODY = "upper_body"
    LOWER_BODY = "lower_body"
    DRESSES = "dresses"
    FOOTWEAR = "footwear"


class VtonMode(str, Enum):
    STANDARD = "standard"
    HIGH_QUALITY = "high_quality"
    ADD_ITEM = "add_item"


class VtonPayload(BaseModel):
    """시착 작업 입력"""
    personImage: str = Field(..., min_length=1, description="인물 이미지 (URL 또는 data URL)")
    garmentImages: List[str] = Field(..., min_length=1, max_length=MAX_GARMENTS, description="의상 이미지 목록")
    categories: List[VtonCategory] = Field(..., description="의상별 카테고리")
    mode: VtonMode = Field(VtonMode.STANDARD, description="첫 의상 처리 모드")

    @model_validator(mode="after")
    def check_categories(self):
        if len(self.categories) != len(self.garmentImages):
            raise ValueError("categories must have the same length as garmentImages")
        return self


class QueueAddRequest(BaseModel):
    payload: VtonPayload
    customerId: Optional[str] = Field(None, description="소비자 ID")
    lineUserId: Optional[str] = Field(None, description="LINE 사용자 ID")
    storeId: Optional[str] = Field(None, description="스토어 ID (무료 티켓 설정 / B2B 과금 대상)")
    chargeStore: bool = Field(False, description="True면 스토어 B2B 잔액에서 차감")
    ownerId: Optional[str] = Field(None, description="작업 소유자 (미지정 시 과금 계정 식별자)")
    queueId: Optional[str] = Field(None, description="클라이언트 지정 작업 ID (재요청 멱등 키)")

    def account_ref(self) -> AccountRef:
        return AccountRef(
            store_id=self.storeId,
            customer_id=self.customerId,
            line_user_id=self.lineUserId,
            charge_store=self.chargeStore,
        )


class QueueAddResponse(BaseModel):
    success: bool = True
    queueId: str
    position: int
    itemsAhead: int
    estimatedWaitTime: int
    creditSource: Optional[str] = None


class QueueItemResponse(BaseModel):
    id: str
    status: str
    position: int
    itemsAhead: int
    estimatedWaitTime: int
    resultData: Optional[Dict[str, Any]] = None
    errorMessage: Optional[str] = None
    retryCount: int
    ownerId: Optional[str] = None
    cancelRequested: bool = False
    createdAt: datetime
    updatedAt: datetime
    completedAt: Optional[datetime] = None

    @classmethod
    def from_view(cls, view) -> "QueueItemResponse":
        return cls(
            id=view.id,
            status=view.status,
            position=view.position,
            itemsAhead=view.items_ahead,
            estimatedWaitTime=view.estimated_wait_time,
            resultData=view.result_data,
            errorMessage=view.error_message,
            retryCount=view.retry_count,
            ownerId=view.owner_id,
            cancelRequested=view.cancel_requested,
            createdAt=view.created_at,
            updatedAt=view.updated_at,
            completedAt=view.completed_at,
        )


class QueueStatusResponse(BaseModel):
    success: bool = True
    item: QueueItemResponse


class QueueListResponse(BaseModel):
    success: bool = True
    items: List[QueueItemResponse]


class QueueStats(BaseModel):
    pendingCount: int
    processingCount: int
    estimatedWaitTime: int


class QueueStatsResponse(BaseModel):
    success: bool = True
    stats: QueueStats


class QueueCancelResponse(BaseModel):
    success: bool = True
    queueId: str
    refunded: bool
