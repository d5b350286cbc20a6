# core/database.py
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)

def get_database_url(url: str = None) -> str:
    """동기 드라이버용 데이터베이스 URL 정규화"""
    url = url or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is not set")

    # asyncpg -> psycopg 동기 드라이버로 변경
    if url.startswith("postgresql+asyncpg://"):
        url = url.replace("postgresql+asyncpg://", "postgresql://")
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://")

    return url

def build_engine(url: str = None, echo: bool = False) -> Engine:
    """엔진 생성

    비즈니스 로직:
    - PostgreSQL: 조건부 UPDATE가 행 잠금을 잡으므로 read committed로 충분
    - SQLite: 쓰기 트랜잭션을 BEGIN IMMEDIATE로 시작해 차감/점유를 직렬화
    - 동시 요청이 잠금을 기다리도록 busy timeout 설정
    """
    url = get_database_url(url)

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # pysqlite의 암묵적 BEGIN을 끄고 직접 발행
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # 연결 유효성 검사
        pool_recycle=300,  # 5분마다 연결 재생성
        connect_args={
            "connect_timeout": 10,
            "application_name": "vton-queue-api",
            "options": "-c default_transaction_isolation=read_committed"
        },
        echo=echo
    )

def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        expire_on_commit=False
    )

engine = build_engine(echo=settings.ENV == "development" and settings.LOG_LEVEL == "DEBUG")

SessionLocal = build_session_factory(engine)

Base = declarative_base()

def get_db() -> Session:
    """데이터베이스 세션 생성 및 관리"""
    db = None
    try:
        db = SessionLocal()
        yield db
    except Exception as e:
        logger.error(f"Database session error: {e}")
        if db:
            db.rollback()
        raise
    finally:
        if db:
            try:
                db.close()
            except Exception as e:
                logger.error(f"Error closing database session: {e}")

def create_tables(bind: Engine = None):
    """데이터베이스 테이블 생성"""
    # 모델 등록을 위해 임포트
    from app.models import database as models  # noqa: F401

    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating database tables: {e}")
        raise

def test_connection(bind: Engine = None) -> bool:
    """데이터베이스 연결 테스트"""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        return False
