#!/usr/bin/env python3
"""
데이터베이스 테이블 생성 스크립트

사용법:
  python scripts/migrate.py

환경변수:
  DATABASE_URL: SQLite 또는 PostgreSQL 연결 URL
"""

import os
import sys
import logging
from sqlalchemy.exc import SQLAlchemyError

# 프로젝트 루트를 Python 경로에 추가
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from app.core.config import settings
from app.core.database import engine, create_tables, test_connection

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def run_migrations() -> bool:
    """credit_accounts / credit_transactions / queue_items 생성 (이미 있으면 유지)"""
    if not test_connection(engine):
        logger.error("Database connection failed")
        return False

    try:
        create_tables(engine)
    except SQLAlchemyError as e:
        logger.error(f"Table creation failed: {e}")
        return False

    logger.info("Tables created/verified successfully!")
    return True

if __name__ == "__main__":
    if not settings.DATABASE_URL:
        logger.error("DATABASE_URL environment variable is not set")
        sys.exit(1)

    success = run_migrations()
    sys.exit(0 if success else 1)
