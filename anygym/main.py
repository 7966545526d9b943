import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

# Load env from the project root .env (tests configure the environment themselves)
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(project_dir, ".env"))

from anygym.core.config import settings, validate_config
from anygym.core.database import create_all_tables
from anygym.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from anygym.core.logging import configure_logging
from anygym.core.middleware.request_id import RequestIdMiddleware
from anygym.api import billing, gyms, health, passes
from anygym.features.billing.service import build_processor

logger = logging.getLogger("anygym")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting AnyGym pass engine...")
    validate_config(strict=settings.CONFIG_STRICT)
    create_all_tables()
    # Tests may inject a processor before startup
    if getattr(app.state, "billing", None) is None:
        app.state.billing = build_processor()
    try:
        yield
    finally:
        logger.info("Stopping AnyGym pass engine...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)

    app = FastAPI(title="AnyGym - Pass Engine", lifespan=lifespan)
    app.state.billing = None

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.BASE_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(passes.router)
    app.include_router(billing.router)
    app.include_router(gyms.router)
    app.include_router(health.router)
    return app


app = create_app()
