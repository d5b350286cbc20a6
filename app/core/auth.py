from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
from app.core.errors import ErrorKind, api_error
from app.core.security import verify_token, verify_webhook_secret
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

def get_current_store(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """Bearer 토큰의 스토어 ID 반환 (토큰이 없거나 유효하지 않으면 401)"""
    if not credentials:
        raise api_error(ErrorKind.AUTH_REQUIRED)

    store_id = verify_token(credentials.credentials)
    if not store_id:
        logger.warning("Rejected store request with invalid token")
        raise api_error(ErrorKind.AUTH_REQUIRED, "無効なトークンです")

    return store_id

def require_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret")
) -> None:
    """결제 웹훅 호출자 검증"""
    if not verify_webhook_secret(x_webhook_secret):
        logger.warning("Rejected billing webhook with invalid secret")
        raise api_error(ErrorKind.AUTH_REQUIRED, "Webhookシークレットが正しくありません")
