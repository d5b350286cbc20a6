"""
크레딧 원장 (Credit Ledger)

비즈니스 로직:
- 시착 1건 처리 시 1크레딧 차감, 작업 ID 기준으로 멱등
- 소비자(B2C) 차감 우선순위: 무료 티켓 → 구독 크레딧(active일 때만) → 유료 크레딧
- 스토어(B2B)는 단일 balance에서 차감
- 무료 티켓은 스토어 설정 시각(기준 타임존)에 daily_free_limit으로 리셋
- 최종 실패/취소된 작업은 원래 버킷으로 +1 환불 (원 차감 기록은 삭제하지 않음)
- 모든 차감/환불/충전은 credit_transactions에 추가 전용으로 기록
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.cache import TTLCache
from app.core.config import settings
from app.core.errors import ErrorKind, user_message_for
from app.models.database import (
    ACCOUNT_KIND_CONSUMER,
    ACCOUNT_KIND_STORE,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_NONE,
    CreditAccount,
    CreditTransaction,
)
from app.utils.time_utils import next_reset_time, utcnow

logger = logging.getLogger(__name__)

# 버킷(차감 출처)
SOURCE_FREE = "free"
SOURCE_SUBSCRIPTION = "subscription"
SOURCE_PAID = "paid"
SOURCE_STORE = "store_b2b"

# 트랜잭션 종류
TX_DEBIT = "debit"
TX_REFUND = "refund"
TX_PURCHASE = "purchase"
TX_SUBSCRIPTION_RENEWAL = "subscription_renewal"

BUCKET_COLUMNS = {
    SOURCE_FREE: CreditAccount.free_tickets_remaining,
    SOURCE_SUBSCRIPTION: CreditAccount.subscription_credits,
    SOURCE_PAID: CreditAccount.paid_credits,
    SOURCE_STORE: CreditAccount.balance,
}

CONSUMER_DEBIT_ORDER = (SOURCE_FREE, SOURCE_SUBSCRIPTION, SOURCE_PAID)

DAILY_LIMIT_RANGE = (1, 100)
RESET_HOUR_RANGE = (0, 23)


@dataclass
class AccountRef:
    """과금 대상 계정 참조

    - charge_store=True: store_id의 B2B 계정
    - 그 외: customer_id 또는 line_user_id 중 정확히 하나로 소비자 계정 지정
      (store_id는 무료 티켓 설정을 가져올 스토어)
    """
    store_id: Optional[str] = None
    customer_id: Optional[str] = None
    line_user_id: Optional[str] = None
    charge_store: bool = False

    def resolve(self) -> Tuple[Optional[str], Optional[ErrorKind]]:
        """(account_key, error_kind) 반환"""
        if self.charge_store:
            if not self.store_id:
                return None, ErrorKind.AUTH_REQUIRED
            return f"store:{self.store_id}", None

        if self.customer_id and self.line_user_id:
            return None, ErrorKind.INVALID_REQUEST
        if self.customer_id:
            return f"customer:{self.customer_id}", None
        if self.line_user_id:
            return f"line:{self.line_user_id}", None
        return None, ErrorKind.AUTH_REQUIRED

    @property
    def owner_id(self) -> Optional[str]:
        if self.charge_store:
            return self.store_id
        return self.line_user_id or self.customer_id

    @property
    def kind(self) -> str:
        return ACCOUNT_KIND_STORE if self.charge_store else ACCOUNT_KIND_CONSUMER


@dataclass(frozen=True)
class StoreSettings:
    daily_free_limit: int
    free_reset_hour: int


@dataclass(frozen=True)
class LedgerCapabilities:
    """기동 시 한 번 결정되는 백엔드 기능 플래그"""
    update_returning: bool = False

    @classmethod
    def detect(cls, engine: Engine) -> "LedgerCapabilities":
        supported = bool(getattr(engine.dialect, "update_returning", False))
        logger.info(f"Ledger capabilities for {engine.dialect.name}: update_returning={supported}")
        return cls(update_returning=supported)


@dataclass
class DeductResult:
    """CheckAndDeduct 결과"""
    allowed: bool
    source: Optional[str] = None
    transaction_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    replayed: bool = False

    @classmethod
    def denied(cls, kind: ErrorKind) -> "DeductResult":
        return cls(allowed=False, error_kind=kind, error_message=user_message_for(kind))


@dataclass
class RefundResult:
    refunded: bool
    source: Optional[str] = None
    transaction_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    replayed: bool = False


@dataclass
class CreditResult:
    """충전/구독 갱신 결과"""
    success: bool
    transaction_id: Optional[str] = None
    balance: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    replayed: bool = False


@dataclass
class BalanceView:
    kind: str
    account_id: str
    data: Dict[str, Any] = field(default_factory=dict)


class CreditLedger:
    """계정별 잔액과 트랜잭션을 소유하는 원장

    모든 메서드는 호출자가 넘긴 Session에서 자체적으로 commit/rollback 한다.
    업무 결과는 결과 객체로, 저장소 장애(SQLAlchemyError)는 예외로 전달한다.
    """

    def __init__(
        self,
        capabilities: Optional[LedgerCapabilities] = None,
        store_cache_ttl: Optional[float] = None,
        default_daily_free_limit: Optional[int] = None,
        default_free_reset_hour: Optional[int] = None,
        reset_offset_hours: Optional[int] = None,
    ):
        self.capabilities = capabilities or LedgerCapabilities()
        self.default_daily_free_limit = (
            settings.DEFAULT_DAILY_FREE_LIMIT if default_daily_free_limit is None else default_daily_free_limit
        )
        self.default_free_reset_hour = (
            settings.DEFAULT_FREE_RESET_HOUR if default_free_reset_hour is None else default_free_reset_hour
        )
        self.reset_offset_hours = (
            settings.RESET_UTC_OFFSET_HOURS if reset_offset_hours is None else reset_offset_hours
        )
        self.store_cache: TTLCache[str, StoreSettings] = TTLCache(
            settings.STORE_CACHE_TTL_SECONDS if store_cache_ttl is None else store_cache_ttl
        )

    # ------------------------------------------------------------------
    # 스토어 설정
    # ------------------------------------------------------------------

    def get_store_settings(self, db: Session, store_id: Optional[str]) -> StoreSettings:
        """스토어 무료 티켓 설정 조회 (미설정 시 기본값 3회 / 0시)"""
        if not store_id:
            return StoreSettings(self.default_daily_free_limit, self.default_free_reset_hour)
        return self.store_cache.get_or_load(store_id, lambda key: self._load_store_settings(db, key))

    def _load_store_settings(self, db: Session, store_id: str) -> StoreSettings:
        row = db.execute(
            select(CreditAccount.daily_free_limit, CreditAccount.free_reset_hour)
            .where(CreditAccount.account_key == f"store:{store_id}")
        ).first()

        daily_limit = row.daily_free_limit if row and row.daily_free_limit is not None else self.default_daily_free_limit
        reset_hour = row.free_reset_hour if row and row.free_reset_hour is not None else self.default_free_reset_hour
        return StoreSettings(daily_free_limit=daily_limit, free_reset_hour=reset_hour)

    def update_store_settings(
        self,
        db: Session,
        store_id: str,
        daily_tryon_limit: Optional[int] = None,
        free_reset_hour: Optional[int] = None,
    ) -> StoreSettings:
        """스토어 설정 변경

        비즈니스 로직:
        - 범위를 벗어난 값은 보정하지 않고 ValueError
        - 이미 지급된 무료 티켓은 건드리지 않고 다음 리셋부터 새 한도 적용
        - 변경 즉시 설정 캐시 무효화
        """
        if daily_tryon_limit is not None and not DAILY_LIMIT_RANGE[0] <= daily_tryon_limit <= DAILY_LIMIT_RANGE[1]:
            raise ValueError("dailyTryonLimit must be between 1 and 100")
        if free_reset_hour is not None and not RESET_HOUR_RANGE[0] <= free_reset_hour <= RESET_HOUR_RANGE[1]:
            raise ValueError("freeResetHour must be between 0 and 23")

        try:
            account = self._get_or_create(db, AccountRef(store_id=store_id, charge_store=True), utcnow())
            if daily_tryon_limit is not None:
                account.daily_free_limit = daily_tryon_limit
            if free_reset_hour is not None:
                account.free_reset_hour = free_reset_hour
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to update settings for store {store_id}: {str(e)}")
            raise

        self.store_cache.invalidate(store_id)
        logger.info(
            f"Updated store {store_id} settings: daily_free_limit={account.daily_free_limit}, "
            f"free_reset_hour={account.free_reset_hour}"
        )
        return StoreSettings(
            daily_free_limit=account.daily_free_limit if account.daily_free_limit is not None else self.default_daily_free_limit,
            free_reset_hour=account.free_reset_hour if account.free_reset_hour is not None else self.default_free_reset_hour,
        )

    # ------------------------------------------------------------------
    # 차감
    # ------------------------------------------------------------------

    def check_and_deduct(
        self,
        db: Session,
        ref: AccountRef,
        job_id: str,
        now: Optional[datetime] = None,
    ) -> DeductResult:
        """크레딧 확인 및 1크레딧 차감 (작업 ID 기준 멱등)

        비즈니스 로직:
        1. 계정이 없으면 생성 (소비자는 스토어 한도로 무료 티켓 지급)
        2. 같은 job_id의 차감 기록이 있으면 그 결과를 그대로 반환 (이미 환불된 작업이면 INVALID_STATE)
        3. 무료 티켓 리셋 시각이 지났으면 리셋 후 평가
        4. 무료 → 구독(active) → 유료 순으로 조건부 UPDATE 차감
        5. 차감 트랜잭션 기록, 동일 job_id 경합 시 롤백 후 승자 결과 반환
        """
        account_key, error_kind = ref.resolve()
        if error_kind:
            logger.warning(f"Credit check rejected: {error_kind.value}")
            return DeductResult.denied(error_kind)
        if not job_id:
            return DeductResult.denied(ErrorKind.INVALID_REQUEST)

        now = now or utcnow()

        try:
            account = self._get_or_create(db, ref, now)

            existing = self._find_transaction(db, account.id, job_id, TX_DEBIT)
            if existing:
                refunded = self._find_transaction(db, account.id, job_id, TX_REFUND)
                db.commit()
                if refunded:
                    # 환불까지 끝난 작업 ID는 재사용 불가
                    logger.warning(f"Job {job_id} was already refunded, rejecting replay")
                    return DeductResult.denied(ErrorKind.INVALID_STATE)
                logger.info(f"Debit for job {job_id} already recorded as {existing.id}, replaying")
                return DeductResult(
                    allowed=True,
                    source=existing.source,
                    transaction_id=existing.id,
                    replayed=True,
                )

            if account.kind == ACCOUNT_KIND_STORE:
                source, balance_after = self._debit_store(db, account.id, now)
            else:
                store_settings = self.get_store_settings(db, ref.store_id or account.store_id)
                self._apply_due_reset(db, account.id, store_settings, now)
                source, balance_after = self._debit_consumer(db, account.id, now)

            if source is None:
                # 계정 생성/리셋은 유지
                db.commit()
                logger.warning(f"Insufficient credits for account {account_key} (job {job_id})")
                return DeductResult.denied(ErrorKind.NO_CREDITS)

            transaction = CreditTransaction(
                account_id=account.id,
                kind=TX_DEBIT,
                source=source,
                amount=-1,
                linked_job_id=job_id,
                balance_after=balance_after,
                created_at=now,
            )
            db.add(transaction)
            db.flush()
            db.commit()

        except IntegrityError:
            db.rollback()
            replay = self._replay_debit(db, account_key, job_id)
            if replay:
                return replay
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to deduct credit for {account_key} (job {job_id}): {str(e)}")
            raise

        logger.info(f"Deducted 1 credit from {account_key} ({source}) for job {job_id}, balance_after={balance_after}")
        return DeductResult(allowed=True, source=source, transaction_id=transaction.id)

    def _replay_debit(self, db: Session, account_key: str, job_id: str) -> Optional[DeductResult]:
        account = self._find_account(db, account_key)
        if not account:
            return None
        existing = self._find_transaction(db, account.id, job_id, TX_DEBIT)
        db.commit()
        if not existing:
            return None
        logger.info(f"Concurrent debit for job {job_id} lost the race, replaying {existing.id}")
        return DeductResult(allowed=True, source=existing.source, transaction_id=existing.id, replayed=True)

    def _apply_due_reset(self, db: Session, account_id: str, store_settings: StoreSettings, now: datetime) -> bool:
        next_reset = next_reset_time(store_settings.free_reset_hour, self.reset_offset_hours, now)
        result = db.execute(
            update(CreditAccount)
            .where(
                and_(
                    CreditAccount.id == account_id,
                    or_(
                        CreditAccount.free_tickets_reset_at.is_(None),
                        CreditAccount.free_tickets_reset_at <= now,
                    ),
                )
            )
            .values(
                free_tickets_remaining=store_settings.daily_free_limit,
                free_tickets_reset_at=next_reset,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                f"Reset free tickets for account {account_id} to {store_settings.daily_free_limit}, "
                f"next reset at {next_reset.isoformat()}"
            )
            return True
        return False

    def _debit_consumer(self, db: Session, account_id: str, now: datetime) -> Tuple[Optional[str], Optional[int]]:
        for source in CONSUMER_DEBIT_ORDER:
            column = BUCKET_COLUMNS[source]
            conditions = [CreditAccount.id == account_id, column > 0]
            if source == SOURCE_SUBSCRIPTION:
                conditions.append(CreditAccount.subscription_status == SUBSCRIPTION_ACTIVE)

            balance_after = self._conditional_update(
                db, account_id, column, and_(*conditions), {column.key: column - 1, "updated_at": now}
            )
            if balance_after is not None:
                return source, balance_after
        return None, None

    def _debit_store(self, db: Session, account_id: str, now: datetime) -> Tuple[Optional[str], Optional[int]]:
        column = CreditAccount.balance
        balance_after = self._conditional_update(
            db,
            account_id,
            column,
            and_(CreditAccount.id == account_id, column > 0),
            {
                "balance": column - 1,
                "total_consumed": CreditAccount.total_consumed + 1,
                "updated_at": now,
            },
        )
        if balance_after is None:
            return None, None
        return SOURCE_STORE, balance_after

    def _conditional_update(self, db: Session, account_id: str, column, condition, values: Dict[str, Any]) -> Optional[int]:
        """조건부 UPDATE 한 번으로 읽기-수정-쓰기, 적용 시 갱신 후 값 반환"""
        stmt = (
            update(CreditAccount)
            .where(condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if self.capabilities.update_returning:
            row = db.execute(stmt.returning(column)).first()
            return row[0] if row else None

        result = db.execute(stmt)
        if result.rowcount != 1:
            return None
        return db.execute(select(column).where(CreditAccount.id == account_id)).scalar_one()

    # ------------------------------------------------------------------
    # 환불
    # ------------------------------------------------------------------

    def refund(
        self,
        db: Session,
        job_id: str,
        reason: str = "job_failed",
        now: Optional[datetime] = None,
        transaction_id: Optional[str] = None,
    ) -> RefundResult:
        """작업 실패/취소 시 원 차감 버킷으로 +1 환불 (작업 ID 기준 멱등)

        transaction_id(큐 아이템의 credit_transaction_id)가 있으면 그 차감 기록을 환불 대상으로 삼는다.
        """
        now = now or utcnow()
        debit = None

        try:
            debit = self._find_debit(db, job_id, transaction_id)

            if not debit:
                db.commit()
                logger.warning(f"No debit found for job {job_id}, nothing to refund")
                return RefundResult(refunded=False, error_kind=ErrorKind.NOT_FOUND)

            existing = self._find_transaction(db, debit.account_id, job_id, TX_REFUND)
            if existing:
                db.commit()
                return RefundResult(refunded=True, source=existing.source, transaction_id=existing.id, replayed=True)

            column = BUCKET_COLUMNS[debit.source]
            values = {column.key: column + 1, "updated_at": now}
            if debit.source == SOURCE_STORE:
                values["total_consumed"] = CreditAccount.total_consumed - 1

            balance_after = self._conditional_update(
                db, debit.account_id, column, CreditAccount.id == debit.account_id, values
            )

            transaction = CreditTransaction(
                account_id=debit.account_id,
                kind=TX_REFUND,
                source=debit.source,
                amount=1,
                linked_job_id=job_id,
                balance_after=balance_after,
                note=reason,
                created_at=now,
            )
            db.add(transaction)
            db.flush()
            db.commit()

        except IntegrityError:
            db.rollback()
            existing = self._find_transaction(db, debit.account_id, job_id, TX_REFUND) if debit else None
            db.commit()
            if existing:
                return RefundResult(refunded=True, source=existing.source, transaction_id=existing.id, replayed=True)
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to refund credit for job {job_id}: {str(e)}")
            raise

        logger.info(f"Refunded 1 credit ({debit.source}) to account {debit.account_id} for job {job_id}: {reason}")
        return RefundResult(refunded=True, source=debit.source, transaction_id=transaction.id)

    # ------------------------------------------------------------------
    # 충전 / 구독
    # ------------------------------------------------------------------

    def apply_credit(
        self,
        db: Session,
        ref: AccountRef,
        amount: int,
        bucket: str,
        external_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> CreditResult:
        """구매 크레딧 충전 (external_id가 있으면 결제 ID 기준 멱등)"""
        account_key, error_kind = ref.resolve()
        if error_kind:
            return CreditResult(success=False, error_kind=error_kind)
        if amount <= 0:
            return CreditResult(success=False, error_kind=ErrorKind.INVALID_REQUEST)

        allowed_buckets = (SOURCE_STORE,) if ref.charge_store else (SOURCE_PAID, SOURCE_SUBSCRIPTION, SOURCE_FREE)
        if bucket not in allowed_buckets:
            return CreditResult(success=False, error_kind=ErrorKind.INVALID_REQUEST)

        now = utcnow()
        try:
            account = self._get_or_create(db, ref, now)

            if external_id:
                existing = self._find_transaction(db, account.id, external_id, TX_PURCHASE)
                if existing:
                    db.commit()
                    return CreditResult(
                        success=True, transaction_id=existing.id, balance=existing.balance_after, replayed=True
                    )

            column = BUCKET_COLUMNS[bucket]
            values = {column.key: column + amount, "updated_at": now}
            if bucket == SOURCE_STORE:
                values["total_purchased"] = CreditAccount.total_purchased + amount

            balance_after = self._conditional_update(db, account.id, column, CreditAccount.id == account.id, values)

            transaction = CreditTransaction(
                account_id=account.id,
                kind=TX_PURCHASE,
                source=bucket,
                amount=amount,
                linked_job_id=external_id,
                balance_after=balance_after,
                note=note,
                created_at=now,
            )
            db.add(transaction)
            db.flush()
            db.commit()

        except IntegrityError:
            db.rollback()
            account = self._find_account(db, account_key)
            existing = self._find_transaction(db, account.id, external_id, TX_PURCHASE) if account and external_id else None
            db.commit()
            if existing:
                return CreditResult(success=True, transaction_id=existing.id, balance=existing.balance_after, replayed=True)
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to add {amount} credits to {account_key}: {str(e)}")
            raise

        logger.info(f"Added {amount} {bucket} credits to {account_key}, balance_after={balance_after}")
        return CreditResult(success=True, transaction_id=transaction.id, balance=balance_after)

    def renew_subscription(
        self,
        db: Session,
        ref: AccountRef,
        plan_credits: int,
        period_end: datetime,
        external_id: Optional[str] = None,
    ) -> CreditResult:
        """구독 갱신: 구독 크레딧을 플랜 지급량으로 리셋하고 기간 연장"""
        account_key, error_kind = ref.resolve()
        if error_kind:
            return CreditResult(success=False, error_kind=error_kind)
        if ref.charge_store or plan_credits < 0:
            return CreditResult(success=False, error_kind=ErrorKind.INVALID_REQUEST)

        now = utcnow()
        try:
            account = self._get_or_create(db, ref, now)

            if external_id:
                existing = self._find_transaction(db, account.id, external_id, TX_SUBSCRIPTION_RENEWAL)
                if existing:
                    db.commit()
                    return CreditResult(
                        success=True, transaction_id=existing.id, balance=existing.balance_after, replayed=True
                    )

            db.execute(
                update(CreditAccount)
                .where(CreditAccount.id == account.id)
                .values(
                    subscription_credits=plan_credits,
                    subscription_status=SUBSCRIPTION_ACTIVE,
                    subscription_period_end=period_end,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            transaction = CreditTransaction(
                account_id=account.id,
                kind=TX_SUBSCRIPTION_RENEWAL,
                source=SOURCE_SUBSCRIPTION,
                amount=plan_credits,
                linked_job_id=external_id,
                balance_after=plan_credits,
                note=f"period_end={period_end.isoformat()}",
                created_at=now,
            )
            db.add(transaction)
            db.flush()
            db.commit()

        except IntegrityError:
            db.rollback()
            account = self._find_account(db, account_key)
            existing = (
                self._find_transaction(db, account.id, external_id, TX_SUBSCRIPTION_RENEWAL)
                if account and external_id else None
            )
            db.commit()
            if existing:
                return CreditResult(success=True, transaction_id=existing.id, balance=existing.balance_after, replayed=True)
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to renew subscription for {account_key}: {str(e)}")
            raise

        logger.info(f"Renewed subscription for {account_key}: {plan_credits} credits until {period_end.isoformat()}")
        return CreditResult(success=True, transaction_id=transaction.id, balance=plan_credits)

    def cancel_subscription(self, db: Session, ref: AccountRef) -> CreditResult:
        """구독 해지: 남은 구독 크레딧은 더 이상 사용 불가"""
        account_key, error_kind = ref.resolve()
        if error_kind:
            return CreditResult(success=False, error_kind=error_kind)

        try:
            account = self._find_account(db, account_key)
            if not account or account.kind != ACCOUNT_KIND_CONSUMER:
                db.commit()
                return CreditResult(success=False, error_kind=ErrorKind.NOT_FOUND)

            account.subscription_status = SUBSCRIPTION_CANCELED
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to cancel subscription for {account_key}: {str(e)}")
            raise

        logger.info(f"Canceled subscription for {account_key}")
        return CreditResult(success=True, balance=account.subscription_credits)

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def get_balance(self, db: Session, ref: AccountRef, now: Optional[datetime] = None) -> Tuple[Optional[BalanceView], Optional[ErrorKind]]:
        """잔액 조회 (계정이 없으면 생성, 리셋은 다음 차감 때 반영)"""
        account_key, error_kind = ref.resolve()
        if error_kind:
            return None, error_kind

        now = now or utcnow()
        try:
            account = self._get_or_create(db, ref, now)
            store_settings = None
            if account.kind == ACCOUNT_KIND_CONSUMER:
                store_settings = self.get_store_settings(db, ref.store_id or account.store_id)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to load balance for {account_key}: {str(e)}")
            raise

        if account.kind == ACCOUNT_KIND_STORE:
            return BalanceView(
                kind=ACCOUNT_KIND_STORE,
                account_id=account.id,
                data={
                    "balance": account.balance,
                    "totalPurchased": account.total_purchased,
                    "totalConsumed": account.total_consumed,
                },
            ), None

        free_tickets = account.free_tickets_remaining
        reset_at = account.free_tickets_reset_at
        if reset_at is None or reset_at <= now:
            free_tickets = store_settings.daily_free_limit
            reset_at = next_reset_time(store_settings.free_reset_hour, self.reset_offset_hours, now)

        return BalanceView(
            kind=ACCOUNT_KIND_CONSUMER,
            account_id=account.id,
            data={
                "freeTickets": free_tickets,
                "dailyFreeLimit": store_settings.daily_free_limit,
                "resetAt": reset_at,
                "paidCredits": account.paid_credits,
                "subscriptionCredits": account.subscription_credits,
                "subscriptionStatus": account.subscription_status,
                "subscriptionPeriodEnd": account.subscription_period_end,
                "totalCredits": free_tickets + account.paid_credits + account.subscription_credits,
            },
        ), None

    def list_transactions(
        self, db: Session, ref: AccountRef, limit: int = 20, offset: int = 0
    ) -> Tuple[List[CreditTransaction], int, Optional[ErrorKind]]:
        """트랜잭션 내역 (최신순)"""
        account_key, error_kind = ref.resolve()
        if error_kind:
            return [], 0, error_kind

        account = self._find_account(db, account_key)
        if not account:
            db.commit()
            return [], 0, None

        total = db.execute(
            select(func.count(CreditTransaction.id)).where(CreditTransaction.account_id == account.id)
        ).scalar_one()
        transactions = db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.account_id == account.id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        ).scalars().all()
        db.commit()
        return list(transactions), total, None

    # ------------------------------------------------------------------
    # 내부 헬퍼
    # ------------------------------------------------------------------

    def _find_account(self, db: Session, account_key: str) -> Optional[CreditAccount]:
        return db.execute(
            select(CreditAccount)
            .where(CreditAccount.account_key == account_key)
            .execution_options(populate_existing=True)
        ).scalars().first()

    def _find_debit(self, db: Session, job_id: str, transaction_id: Optional[str]) -> Optional[CreditTransaction]:
        conditions = [CreditTransaction.linked_job_id == job_id, CreditTransaction.kind == TX_DEBIT]
        if transaction_id:
            conditions.append(CreditTransaction.id == transaction_id)
        return db.execute(
            select(CreditTransaction)
            .where(and_(*conditions))
            .order_by(CreditTransaction.created_at, CreditTransaction.id)
        ).scalars().first()

    def _find_transaction(self, db: Session, account_id: str, linked_job_id: str, kind: str) -> Optional[CreditTransaction]:
        return db.execute(
            select(CreditTransaction).where(
                and_(
                    CreditTransaction.account_id == account_id,
                    CreditTransaction.linked_job_id == linked_job_id,
                    CreditTransaction.kind == kind,
                )
            )
        ).scalars().first()

    def _get_or_create(self, db: Session, ref: AccountRef, now: datetime) -> CreditAccount:
        """계정 조회, 없으면 생성 (동시 생성 경합은 savepoint로 흡수)"""
        account_key, _ = ref.resolve()
        account = self._find_account(db, account_key)
        if account:
            return account

        if ref.charge_store:
            account = CreditAccount(
                account_key=account_key,
                kind=ACCOUNT_KIND_STORE,
                store_id=ref.store_id,
                balance=0,
                total_purchased=0,
                total_consumed=0,
                free_tickets_remaining=0,
                subscription_credits=0,
                paid_credits=0,
                subscription_status=SUBSCRIPTION_NONE,
                created_at=now,
                updated_at=now,
            )
        else:
            store_settings = self.get_store_settings(db, ref.store_id)
            account = CreditAccount(
                account_key=account_key,
                kind=ACCOUNT_KIND_CONSUMER,
                store_id=ref.store_id,
                free_tickets_remaining=store_settings.daily_free_limit,
                free_tickets_reset_at=next_reset_time(store_settings.free_reset_hour, self.reset_offset_hours, now),
                subscription_credits=0,
                paid_credits=0,
                balance=0,
                total_purchased=0,
                total_consumed=0,
                subscription_status=SUBSCRIPTION_NONE,
                created_at=now,
                updated_at=now,
            )

        try:
            with db.begin_nested():
                db.add(account)
        except IntegrityError:
            existing = self._find_account(db, account_key)
            if existing is None:
                raise
            return existing

        logger.info(f"Created {account.kind} credit account {account_key}")
        return account
