# core/config.py
from pydantic_settings import BaseSettings
from typing import List
import os

class Settings(BaseSettings):
    # 서버 설정
    PORT: int = int(os.getenv("PORT", "8000"))
    HOST: str = os.getenv("HOST", "0.0.0.0")
    ENV: str = os.getenv("ENV", "development")

    # 데이터베이스 설정 (로컬 개발은 SQLite, 운영은 PostgreSQL)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./vton.db")

    # 스토어 관리자 JWT 설정
    SECRET_KEY: str = os.getenv("SECRET_KEY", "vton-super-secret-key-for-production-change-this")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

    # 결제 웹훅 공유 시크릿 (비어 있으면 검증 생략)
    BILLING_WEBHOOK_SECRET: str = os.getenv("BILLING_WEBHOOK_SECRET", "")

    # 무료 티켓 설정
    DEFAULT_DAILY_FREE_LIMIT: int = int(os.getenv("DEFAULT_DAILY_FREE_LIMIT", "3"))
    DEFAULT_FREE_RESET_HOUR: int = int(os.getenv("DEFAULT_FREE_RESET_HOUR", "0"))
    RESET_UTC_OFFSET_HOURS: int = int(os.getenv("RESET_UTC_OFFSET_HOURS", "9"))
    STORE_CACHE_TTL_SECONDS: float = float(os.getenv("STORE_CACHE_TTL_SECONDS", "60"))

    # 작업 워커 설정
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "1"))
    RETRY_DELAY_BASE_SECONDS: float = float(os.getenv("RETRY_DELAY_BASE_SECONDS", "10"))
    INFERENCE_TIMEOUT_SECONDS: float = float(os.getenv("INFERENCE_TIMEOUT_SECONDS", "120"))
    INFERENCE_URL: str = os.getenv("INFERENCE_URL", "")
    INFERENCE_API_KEY: str = os.getenv("INFERENCE_API_KEY", "")
    WORKER_POLL_INTERVAL: float = float(os.getenv("WORKER_POLL_INTERVAL", "1.0"))
    WORKER_BATCH_SIZE: int = int(os.getenv("WORKER_BATCH_SIZE", "5"))
    WORKER_MAX_CONCURRENT: int = int(os.getenv("WORKER_MAX_CONCURRENT", "1"))
    STALE_PROCESSING_SECONDS: float = float(os.getenv("STALE_PROCESSING_SECONDS", "300"))
    RUN_WORKER_IN_APP: bool = os.getenv("RUN_WORKER_IN_APP", "false").lower() == "true"

    # 대기시간 추정 설정
    AVERAGE_PROCESSING_SECONDS: float = float(os.getenv("AVERAGE_PROCESSING_SECONDS", "30"))
    AVERAGE_SAMPLE_SIZE: int = int(os.getenv("AVERAGE_SAMPLE_SIZE", "20"))

    # 클라이언트 폴링 기본값
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "3"))
    POLL_TIMEOUT_SECONDS: float = float(os.getenv("POLL_TIMEOUT_SECONDS", "300"))

    # CORS 설정 - 환경 변수 기반
    ALLOWED_ORIGINS: List[str] = []
    ALLOW_ALL_ORIGINS: bool = False

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # 환경 변수에서 CORS 도메인 읽기 (쉼표로 구분)
        cors_origins = os.getenv("ALLOWED_ORIGINS", "")

        # CORS_ALLOW_ALL 환경 변수가 true이면 모든 origin 허용 (개발용)
        allow_all = os.getenv("CORS_ALLOW_ALL", "false").lower() == "true"

        if allow_all and self.ENV == "development":
            self.ALLOW_ALL_ORIGINS = True
            self.ALLOWED_ORIGINS = ["*"]
        elif cors_origins:
            self.ALLOWED_ORIGINS = [origin.strip() for origin in cors_origins.split(",")]
        elif self.ENV == "development":
            self.ALLOWED_ORIGINS = [
                "http://localhost:3000",
                "http://127.0.0.1:3000"
            ]

    # 로깅 설정
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


    class Config:
        case_sensitive = True
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = "ignore"  # 추가 환경변수 허용

settings = Settings()
