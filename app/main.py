from fastapi import FastAPI, Request
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from app.schemas.common import ErrorResponse, ErrorDetail
from app.core.config import settings
from app.core.credits import CreditLedger, LedgerCapabilities
from app.core.database import engine, SessionLocal
from app.core.errors import ErrorKind, user_message_for
from app.core.middleware import RequestContextMiddleware
from app.api.v1.api import api_router
from app.services.queue_manager import QueueManager
import asyncio
import logging

# 로깅 설정
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL))
logger = logging.getLogger(__name__)

SERVICE_NAME = "VTON Queue API"
SERVICE_VERSION = "1.0.0"

app = FastAPI(
    title=SERVICE_NAME,
    description="가상 시착(VTON) 작업 큐 및 크레딧 원장 API 서버",
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)

logger.info(f"CORS Origins: {settings.ALLOWED_ORIGINS}")
logger.info(f"Environment: {settings.ENV}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id", "X-Process-Time"],
)
app.add_middleware(RequestContextMiddleware)

# 원장 / 큐 매니저 (백엔드 기능 플래그는 기동 시 한 번만 결정)
app.state.ledger = CreditLedger(capabilities=LedgerCapabilities.detect(engine))
app.state.queue_manager = QueueManager(ledger=app.state.ledger)
app.state.worker = None
app.state.worker_task = None

# API 라우터 포함
app.include_router(api_router, prefix="/api/v1")

def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump()
    )

@app.on_event("startup")
async def startup_event():
    """애플리케이션 시작 시 실행되는 이벤트"""
    logger.info("Application startup...")

    try:
        from app.core.database import create_tables, test_connection
        logger.info("Testing database connection...")

        if test_connection():
            logger.info("Database connection successful")
            create_tables()
            logger.info("Database tables created/verified successfully")
        else:
            logger.error("Database connection failed during startup")
    except Exception as e:
        # 기존 테이블이 있을 수 있으므로 앱은 계속 실행
        logger.error(f"Database setup error during startup: {e}")

    if settings.RUN_WORKER_IN_APP:
        from app.services.inference import HttpInferenceClient
        from app.services.job_worker import JobWorker

        worker = JobWorker(SessionLocal, HttpInferenceClient(), app.state.ledger)
        app.state.worker = worker
        app.state.worker_task = asyncio.create_task(worker.run())
        logger.info("In-process VTON worker started")

@app.on_event("shutdown")
async def shutdown_event():
    if app.state.worker:
        await app.state.worker.stop()
        if app.state.worker_task:
            await app.state.worker_task
        logger.info("In-process VTON worker stopped")

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return _error_response(exc.status_code, exc.detail["code"], exc.detail.get("message", ""))
    return _error_response(exc.status_code, "http_error", str(exc.detail))

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = user_message_for(ErrorKind.INVALID_REQUEST)
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        message = f"{location}: {errors[0].get('msg', '')}" if location else errors[0].get("msg", message)
    logger.info(f"Validation error on {request.url.path}: {message}")
    return _error_response(422, ErrorKind.INVALID_REQUEST.value, message)

@app.exception_handler(SQLAlchemyError)
async def storage_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Storage error on {request.url.path}: {exc}")
    return _error_response(503, ErrorKind.STORAGE_ERROR.value, user_message_for(ErrorKind.STORAGE_ERROR))

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception on {request.url.path}: {exc}")
    return _error_response(500, "internal_server_error", "サーバーエラーが発生しました")

@app.get("/")
async def root():
    """루트 엔드포인트 - 서비스 정보 반환"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": "가상 시착(VTON) 작업 큐 및 크레딧 원장 API 서버",
        "docs": "/docs",
        "health": "/health"
    }

@app.get("/health")
async def health_check():
    """헬스 체크 엔드포인트"""
    health = {
        "status": "healthy",
        "version": SERVICE_VERSION
    }
    if app.state.worker:
        health["worker"] = app.state.worker.get_stats()
    return health
