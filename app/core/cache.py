"""
만료 시간이 있는 조회 캐시

비즈니스 로직:
- 스토어 설정처럼 자주 읽고 드물게 바뀌는 값을 짧게 보관
- 전역 상태 대신 소유자(CreditLedger)가 인스턴스를 가짐
- 설정 변경 시 invalidate로 즉시 무효화, 그 외에는 TTL 경과 후 재조회
"""

import threading
import time
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """(key, value, expiry) 단위의 스레드 안전 캐시"""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[K, Tuple[V, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def get_or_load(self, key: K, loader: Callable[[K], V]) -> V:
        """캐시 미스 시 loader로 채움 (loader는 잠금 밖에서 실행)"""
        value = self.get(key)
        if value is None:
            value = loader(key)
            self.set(key, value)
        return value

    def invalidate(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
