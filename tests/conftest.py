# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import AsyncIterator, Awaitable, Callable, Generator, Iterator

import httpx
import pytest
from fastapi import FastAPI
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

from appeal_guard.core.settings import Settings
from appeal_guard.db.session import Base
from appeal_guard.db.session import get_db as app_get_session
from appeal_guard.main import create_app
from appeal_guard.services.captcha import CaptchaVerifier
from appeal_guard.services.notifications import AppealNotifier
from appeal_guard.services.reputation import MemoryReputationStore

TEST_DB_URL = "sqlite://"
TEST_ADMIN_KEY = "test-admin-key"
DEFAULT_CLIENT_IP = "203.0.113.10"
START_TIME = 1_700_000_000.0

ClientFactory = Callable[..., Awaitable[httpx.AsyncClient]]


class FakeClock:
    """Deterministic wall clock for reputation store tests."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        admin_key=TEST_ADMIN_KEY,
        redis_url=None,
        database_url=TEST_DB_URL,
    )


@pytest.fixture()
def store(clock: FakeClock, test_settings: Settings) -> MemoryReputationStore:
    return MemoryReputationStore(
        clock=clock,
        counter_idle_seconds=test_settings.counter_idle_seconds,
        signature_ttl_seconds=test_settings.signature_ttl_seconds,
    )


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def notifier() -> AppealNotifier:
    return AppealNotifier(None)


@pytest.fixture()
def app(
    test_settings: Settings,
    store: MemoryReputationStore,
    db_session: Session,
    notifier: AppealNotifier,
) -> Iterator[FastAPI]:
    application = create_app(
        test_settings,
        store,
        captcha=CaptchaVerifier(),
        notifier=notifier,
    )

    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    application.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield application
    finally:
        application.dependency_overrides.clear()


@pytest.fixture()
async def client_factory(app: FastAPI) -> AsyncIterator[ClientFactory]:
    """Build clients whose socket peer address is chosen by the test."""
    clients: list[httpx.AsyncClient] = []

    async def _make(
        ip: str = DEFAULT_CLIENT_IP,
        *,
        raise_app_exceptions: bool = True,
        headers: dict[str, str] | None = None,
    ) -> httpx.AsyncClient:
        transport = httpx.ASGITransport(
            app=app,
            client=(ip, 50_000),
            raise_app_exceptions=raise_app_exceptions,
        )
        client = httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            headers={"user-agent": "Mozilla/5.0 (pytest)", **(headers or {})},
        )
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture()
async def client(client_factory: ClientFactory) -> httpx.AsyncClient:
    return await client_factory()
