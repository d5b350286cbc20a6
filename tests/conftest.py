"""
공통 테스트 픽스처

- 테스트마다 tmp_path 아래 새 SQLite 파일 DB 생성
- 원장 / 큐 매니저는 설정값 대신 명시적 기본값으로 생성
- API 테스트는 get_db 오버라이드 + app.state 교체
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from app.core.credits import AccountRef, CreditLedger, LedgerCapabilities
from app.core.database import build_engine, build_session_factory, create_tables, get_db
from app.models.database import CreditAccount
from app.services.queue_manager import QueueManager


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'vton_test.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def ledger(engine):
    return CreditLedger(
        capabilities=LedgerCapabilities.detect(engine),
        store_cache_ttl=60,
        default_daily_free_limit=3,
        default_free_reset_hour=0,
        reset_offset_hours=9,
    )


@pytest.fixture
def manager(ledger):
    return QueueManager(ledger=ledger, average_processing_seconds=30, sample_size=20)


@pytest.fixture
def client(session_factory, ledger, manager):
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    previous = (app.state.ledger, app.state.queue_manager)
    app.dependency_overrides[get_db] = override_get_db
    app.state.ledger = ledger
    app.state.queue_manager = manager

    yield TestClient(app)

    app.dependency_overrides.clear()
    app.state.ledger, app.state.queue_manager = previous


def load_account(session_factory, ref: AccountRef) -> CreditAccount:
    account_key, _ = ref.resolve()
    with session_factory() as session:
        account = session.execute(
            select(CreditAccount).where(CreditAccount.account_key == account_key)
        ).scalar_one_or_none()
        session.commit()
        return account


def set_account(session_factory, ledger: CreditLedger, ref: AccountRef, **values) -> CreditAccount:
    """계정을 생성한 뒤 버킷 값을 직접 지정"""
    with session_factory() as session:
        ledger.get_balance(session, ref)

    account_key, _ = ref.resolve()
    with session_factory() as session:
        account = session.execute(
            select(CreditAccount).where(CreditAccount.account_key == account_key)
        ).scalar_one()
        for key, value in values.items():
            setattr(account, key, value)
        session.commit()
        return account


def sample_payload(garments: int = 1):
    categories = ["upper_body", "lower_body", "footwear"][:garments]
    return {
        "personImage": "https://cdn.example.com/person.png",
        "garmentImages": [f"https://cdn.example.com/garment-{i}.png" for i in range(garments)],
        "categories": categories,
        "mode": "standard",
    }
