"""Shared pytest fixtures and configuration."""

import os

# Set test environment before the app module builds its default settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from app.config import Settings
from app.context import get_dispatcher
from app.db.db import get_session, init_db
from app.main import create_app
from app.services.notifications import NotificationDispatcher

# long enough that frozen clocks never expire a test token
TEST_TOKEN_MINUTES = 60 * 24 * 365 * 30


class RecordingDispatcher(NotificationDispatcher):
    """Stores notifications like the real dispatcher but keeps emails in memory."""

    def __init__(self):
        super().__init__()
        self.emails = []

    def send_email(self, event):
        self.emails.append(event)
        return True


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret",
        access_token_expire_minutes=TEST_TOKEN_MINUTES,
        sweep_enabled=False,
        log_format="text",
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def app(settings, engine, dispatcher):
    app = create_app(settings)

    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def donor(session):
    from tests.utils.factories import make_user
    from app.models.user import Role

    return make_user(session, Role.DONOR, name="Canteen Staff", org_name="North Canteen")


@pytest.fixture
def receiver(session):
    from tests.utils.factories import make_user
    from app.models.user import Role

    return make_user(session, Role.RECEIVER, name="Asha Rao")
