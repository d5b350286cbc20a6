"""
VTON 큐 / 크레딧 공통 오류 분류 및 예외 클래스

비즈니스 로직:
- 원장과 큐 매니저는 예외 대신 ErrorKind를 담은 결과 객체를 반환
- 호출자는 error_kind로 분기하여 HTTP 상태 코드와 사용자 메시지 결정
- 저장소 장애 같은 인프라 오류만 예외로 전파되어 재시도 대상이 됨
"""

from enum import Enum
from typing import Dict

from fastapi import HTTPException


class ErrorKind(str, Enum):
    """오류 분류"""
    AUTH_REQUIRED = "AUTH_REQUIRED"
    NO_CREDITS = "NO_CREDITS"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    STORAGE_ERROR = "STORAGE_ERROR"
    JOB_FAILED = "JOB_FAILED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_STATE = "INVALID_STATE"


HTTP_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.AUTH_REQUIRED: 401,
    ErrorKind.NO_CREDITS: 402,
    ErrorKind.DAILY_LIMIT_EXCEEDED: 402,
    ErrorKind.STORAGE_ERROR: 503,
    ErrorKind.JOB_FAILED: 500,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.INVALID_STATE: 409,
}

# 사용자 노출용 메시지 (내부 상세는 로그에만 남김)
USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.AUTH_REQUIRED: "ログインが必要です",
    ErrorKind.NO_CREDITS: "クレジットが不足しています。クレジットを購入してください。",
    ErrorKind.DAILY_LIMIT_EXCEEDED: "本日の試着回数の上限に達しました。クレジットを購入してください。",
    ErrorKind.STORAGE_ERROR: "一時的なエラーが発生しました。しばらくしてから再度お試しください。",
    ErrorKind.JOB_FAILED: "試着画像の生成に失敗しました。クレジットは返却されました。",
    ErrorKind.NOT_FOUND: "見つかりませんでした",
    ErrorKind.INVALID_REQUEST: "リクエストが正しくありません",
    ErrorKind.INVALID_STATE: "この操作は現在の状態では実行できません",
}


def http_status_for(kind: ErrorKind) -> int:
    return HTTP_STATUS_BY_KIND.get(kind, 500)


def user_message_for(kind: ErrorKind) -> str:
    return USER_MESSAGES.get(kind, "サーバーエラーが発生しました")


class VtonServiceError(Exception):
    """VTON 서비스 기본 예외 클래스"""
    pass


class InferenceError(VtonServiceError):
    """외부 추론 호출 실패 예외

    비즈니스 로직:
    - retryable=True: 타임아웃, 네트워크 오류, 5xx, 레이트 리밋 등 일시적 장애
    - retryable=False: 입력 이미지 오류 등 재시도해도 결과가 같은 실패
    - message는 로그용 원문, 사용자에게는 user_message만 노출
    """

    def __init__(self, message: str, retryable: bool = True, user_message: str = None):
        super().__init__(message)
        self.retryable = retryable
        self.user_message = user_message or "画像の生成に失敗しました"


def api_error(kind: ErrorKind, message: str = None, status_code: int = None) -> HTTPException:
    """ErrorKind를 공통 에러 응답 형식의 HTTPException으로 변환"""
    return HTTPException(
        status_code=status_code or http_status_for(kind),
        detail={"code": kind.value, "message": message or user_message_for(kind)},
    )
