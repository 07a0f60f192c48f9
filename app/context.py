from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.engine import Engine

from app.config import Settings
from app.db.db import create_db_engine
from app.services.notifications import NotificationDispatcher
from app.services.sse import NotificationBroker
from app.utils.s3_service import ImageStorage


@dataclass(frozen=True)
class AppContext:
    """Collaborators built once at startup and shared read-only by every request."""

    settings: Settings
    engine: Engine
    broker: NotificationBroker
    dispatcher: NotificationDispatcher
    storage: ImageStorage


def build_context(settings: Settings) -> AppContext:
    broker = NotificationBroker()
    return AppContext(
        settings=settings,
        engine=create_db_engine(settings.database_url),
        broker=broker,
        dispatcher=NotificationDispatcher.from_settings(settings, broker),
        storage=ImageStorage(settings),
    )


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_app_settings(request: Request) -> Settings:
    return get_context(request).settings


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return get_context(request).dispatcher


def get_broker(request: Request) -> NotificationBroker:
    return get_context(request).broker


def get_storage(request: Request) -> ImageStorage:
    return get_context(request).storage
