from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError
from contextlib import asynccontextmanager
import logging

from core.config import settings
from core.database import initialize_db, db_manager
from core.logging_config import setup_logging
# Import exceptions and handlers
from core.exceptions import (
    APIException,
    api_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    sqlalchemy_exception_handler,
    general_exception_handler
)
from routes import admin_router, health_router, orders_router, wallet_router

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup event
    initialize_db(settings.SQLALCHEMY_DATABASE_URI, env_is_local=settings.is_local)
    if settings.is_local:
        # Local development runs without migrations
        await db_manager.create_tables()
    logger.info(f"Order service started in {settings.ENVIRONMENT} environment")
    yield
    # Shutdown event
    if db_manager.engine is not None:
        await db_manager.engine.dispose()
    logger.info("Order service stopped")


app = FastAPI(
    title="Storefront Orders API",
    description="Order lifecycle, returns and refunds for the storefront.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include all routers with API versioning v1
app.include_router(orders_router, prefix="/v1")
app.include_router(admin_router, prefix="/v1")
app.include_router(wallet_router, prefix="/v1")
app.include_router(health_router)

# Register exception handlers
app.add_exception_handler(APIException, api_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)


@app.get("/")
async def read_root():
    return {
        "service": "Storefront Orders API",
        "status": "Running",
        "version": "1.0.0",
    }
