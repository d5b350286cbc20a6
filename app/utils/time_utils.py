from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """DB 저장용 naive UTC 현재 시각"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_reset_time(reset_hour: int, offset_hours: int = 9, now: Optional[datetime] = None) -> datetime:
    """기준 타임존의 다음 리셋 시각 계산 (naive UTC 반환)

    비즈니스 로직:
    - 기준 타임존(기본 UTC+9, JST)에서 오늘의 reset_hour 정각을 구함
    - 이미 지났거나 정각이면 다음날 같은 시각으로 이월
    - 반환값은 항상 now보다 엄격히 미래
    """
    if not 0 <= reset_hour <= 23:
        raise ValueError(f"reset_hour must be between 0 and 23, got {reset_hour}")

    now = now or utcnow()
    offset = timedelta(hours=offset_hours)
    local_now = now + offset

    today_reset = local_now.replace(hour=reset_hour, minute=0, second=0, microsecond=0)
    if local_now >= today_reset:
        today_reset += timedelta(days=1)

    return today_reset - offset


def to_naive_utc(value: datetime) -> datetime:
    """타임존이 있는 시각은 UTC로 변환 후 tzinfo 제거 (naive는 UTC로 간주)"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
