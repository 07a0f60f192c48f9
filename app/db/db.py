from fastapi import Request
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine


def create_db_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # handlers run in the threadpool, the sweeper on its own thread
        connect_args["check_same_thread"] = False

    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    # register tables on the metadata
    from app.models import listing, notification, push_subscription, user  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session(request: Request):
    with Session(request.app.state.context.engine) as session:
        yield session
