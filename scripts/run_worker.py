#!/usr/bin/env python3
"""
VTON 작업 워커 단독 실행 스크립트

사용법:
  python scripts/run_worker.py

환경변수:
  DATABASE_URL, INFERENCE_URL, INFERENCE_API_KEY, MAX_RETRIES, WORKER_* 설정 참고
"""

import os
import sys
import asyncio
import logging

# 프로젝트 루트를 Python 경로에 추가
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from app.core.config import settings
from app.core.credits import CreditLedger, LedgerCapabilities
from app.core.database import engine, SessionLocal, create_tables
from app.services.inference import HttpInferenceClient
from app.services.job_worker import JobWorker, WorkerConfig

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL))
logger = logging.getLogger(__name__)

async def main():
    create_tables(engine)

    ledger = CreditLedger(capabilities=LedgerCapabilities.detect(engine))
    config = WorkerConfig.from_settings()
    worker = JobWorker(SessionLocal, HttpInferenceClient(), ledger, config)

    logger.info(
        f"Worker config: batch_size={config.batch_size}, max_concurrent={config.max_concurrent}, "
        f"max_retries={config.max_retries}, timeout={config.job_timeout}s"
    )
    await worker.run(install_signal_handlers=True)

if __name__ == "__main__":
    if not settings.INFERENCE_URL:
        logger.error("INFERENCE_URL environment variable is not set")
        sys.exit(1)

    asyncio.run(main())
