from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, JSON, Index, UniqueConstraint
from app.core.database import Base
from app.utils.time_utils import utcnow
import uuid

def generate_uuid():
    return str(uuid.uuid4())

# 계정 종류
ACCOUNT_KIND_STORE = "store"
ACCOUNT_KIND_CONSUMER = "consumer"

# 구독 상태
SUBSCRIPTION_NONE = "none"
SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_CANCELED = "canceled"

# 작업 상태
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

class CreditAccount(Base):
    __tablename__ = "credit_accounts"

    id = Column(String, primary_key=True, default=generate_uuid)
    # "store:<id>" | "customer:<id>" | "line:<id>"
    account_key = Column(String, unique=True, nullable=False)
    kind = Column(String, nullable=False)
    store_id = Column(String, nullable=True, index=True)

    # 소비자 무료 티켓
    free_tickets_remaining = Column(Integer, nullable=False, default=0)
    free_tickets_reset_at = Column(DateTime, nullable=True)

    # 소비자 구독 / 유료 크레딧
    subscription_credits = Column(Integer, nullable=False, default=0)
    subscription_status = Column(String, nullable=False, default=SUBSCRIPTION_NONE)
    subscription_period_end = Column(DateTime, nullable=True)
    paid_credits = Column(Integer, nullable=False, default=0)

    # 스토어(B2B) 잔액 및 설정
    balance = Column(Integer, nullable=False, default=0)
    total_purchased = Column(Integer, nullable=False, default=0)
    total_consumed = Column(Integer, nullable=False, default=0)
    daily_free_limit = Column(Integer, nullable=True)
    free_reset_hour = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        # 같은 작업에 대한 차감/환불은 각각 최대 1건
        UniqueConstraint("account_id", "linked_job_id", "kind", name="uq_credit_tx_account_job_kind"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    account_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)  # debit, refund, purchase, subscription_renewal
    source = Column(String, nullable=False)  # free, subscription, paid, store_b2b
    amount = Column(Integer, nullable=False)
    linked_job_id = Column(String, nullable=True, index=True)
    balance_after = Column(Integer, nullable=True)
    note = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (
        Index("ix_queue_items_status_created", "status", "created_at", "id"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    owner_id = Column(String, nullable=True, index=True)
    store_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default=STATUS_PENDING)
    payload = Column(JSON, nullable=False)
    result_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    # 과금 메타데이터 (account_key: 차감된 계정, 같은 작업 ID의 타 계정 재사용 방지)
    account_key = Column(String, nullable=True)
    credit_source = Column(String, nullable=True)
    credit_transaction_id = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
