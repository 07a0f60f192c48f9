import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, get_settings
from app.context import build_context
from app.db.db import init_db
from app.routers import analytics, auth, listings, notifications, profile, push
from app.services.sweeper import start_scheduler
from app.utils.errors import FoodShareError
from app.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    context = app.state.context
    setup_logging(context.settings)

    engine = context.engine
    init_db(engine)

    scheduler = None
    if context.settings.sweep_enabled:
        scheduler = start_scheduler(engine, context.dispatcher, context.settings)

    yield

    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
    engine.dispose()


async def handle_domain_error(request: Request, exc: FoodShareError):
    if exc.status_code >= 500:
        logger.error("Unhandled domain error", extra={"path": request.url.path, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


async def handle_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors()), "code": "validation_error"},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(title="FoodShare", lifespan=lifespan)
    app.state.context = build_context(settings)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FoodShareError, handle_domain_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    # Register routers
    app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
    app.include_router(profile.router, prefix="/profile", tags=["Profile"])
    app.include_router(listings.router, prefix="/listings", tags=["Listings"])
    app.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
    app.include_router(push.router, prefix="/push", tags=["Push"])
    app.include_router(analytics.router, prefix="/analytics", tags=["Analytics"])

    @app.get("/")
    def root():
        return {"status": "ok"}

    return app


app = create_app()
