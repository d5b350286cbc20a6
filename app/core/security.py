from datetime import datetime, timedelta
from typing import Any, Union, Optional
from jose import jwt, JWTError
from app.core.config import settings
import hmac
import logging

logger = logging.getLogger(__name__)

STORE_TOKEN_TYPE = "store"

def create_access_token(
    subject: Union[str, Any], expires_delta: timedelta = None, token_type: str = STORE_TOKEN_TYPE
) -> str:
    """스토어 관리자 JWT 액세스 토큰 생성"""
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode = {"exp": expire, "sub": str(subject), "type": token_type}
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str, token_type: str = STORE_TOKEN_TYPE) -> Optional[str]:
    """JWT 토큰 검증 후 subject(스토어 ID) 반환, 실패 시 None"""
    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
        )
        subject: str = payload.get("sub")
        token_type_in_token: str = payload.get("type")

        if subject is None or token_type_in_token != token_type:
            return None

        return subject
    except JWTError as e:
        logger.warning(f"JWT validation error: {e}")
        return None

def verify_webhook_secret(provided: Optional[str], expected: Optional[str] = None) -> bool:
    """결제 웹훅 공유 시크릿 비교 (시크릿 미설정 시 통과)"""
    expected = settings.BILLING_WEBHOOK_SECRET if expected is None else expected
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
