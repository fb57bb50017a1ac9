from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy import text, Column, DateTime, func, TypeDecorator, CHAR
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.exc import SQLAlchemyError, DisconnectionError, OperationalError
import asyncio
import time
import uuid
from typing import AsyncGenerator, Any, Dict
from contextlib import asynccontextmanager

from core.utils.logging import structured_logger
from core.exceptions.api_exceptions import DatabaseException, APIException

Base = declarative_base()
CHAR_LENGTH = 255


class GUID(TypeDecorator):
    """UUID column: native UUID on PostgreSQL, CHAR(36) text elsewhere (tests run on SQLite)."""
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(UUID())
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class BaseModel(Base):
    """Base model with UUID primary key and timestamps"""
    __abstract__ = True

    id = Column(GUID(), primary_key=True, default=uuid.uuid4, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class DatabaseManager:
    """Owns the async engine and hands out sessions, retrying dropped connections."""

    def __init__(self):
        self.engine = None
        self.session_factory = None
        self.connection_failures = 0

    def initialize(self, database_uri: str, env_is_local: bool):
        if self.session_factory is not None:
            return

        options: Dict[str, Any] = {"echo": env_is_local, "pool_pre_ping": True}
        # SQLite uses a single-connection pool that rejects sizing arguments
        if not database_uri.startswith("sqlite"):
            options.update(pool_size=10, max_overflow=20, pool_timeout=30, pool_recycle=3600)

        engine = create_async_engine(database_uri, **options)
        self.set_engine_and_session_factory(
            engine,
            sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False),
        )

    def set_engine_and_session_factory(self, engine, session_factory):
        self.engine = engine
        self.session_factory = session_factory

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def health_check(self) -> Dict[str, Any]:
        if self.session_factory is None:
            return {"status": "uninitialized"}

        started = time.perf_counter()
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            self.connection_failures += 1
            structured_logger.error(
                message="Database health check failed",
                metadata={"connection_failures": self.connection_failures},
                exception=e,
            )
            return {
                "status": "unhealthy",
                "connection_failures": self.connection_failures,
                "error": str(e),
            }

        self.connection_failures = 0
        return {
            "status": "healthy",
            "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    @asynccontextmanager
    async def get_session_with_retry(
        self,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        backoff_factor: float = 2.0,
    ) -> AsyncGenerator[AsyncSession, None]:
        """Open a session whose connection is known to work, backing off between attempts."""
        if self.session_factory is None:
            raise DatabaseException(message="Database session factory not initialized.")

        attempt = 0
        while True:
            session = self.session_factory()
            try:
                await session.connection()
                break
            except (DisconnectionError, OperationalError) as e:
                await session.close()
                self.connection_failures += 1
                if attempt >= max_retries:
                    structured_logger.error(
                        message=f"Database unreachable after {attempt + 1} attempts",
                        metadata={"connection_failures": self.connection_failures},
                        exception=e,
                    )
                    raise DatabaseException(message="Database is unavailable")
                delay = retry_delay * (backoff_factor ** attempt)
                structured_logger.warning(
                    message=f"Database connection attempt {attempt + 1} failed, retrying in {delay}s",
                    exception=e,
                )
                attempt += 1
                await asyncio.sleep(delay)

        try:
            yield session
        finally:
            await session.close()


# Global database manager instance
db_manager = DatabaseManager()


def initialize_db(database_uri: str, env_is_local: bool):
    db_manager.initialize(database_uri, env_is_local)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; unexpected database errors surface as DatabaseException."""
    if db_manager.session_factory is None:
        raise DatabaseException(message="Database session factory not initialized.")

    try:
        async with db_manager.get_session_with_retry() as session:
            yield session
    except APIException:
        raise
    except SQLAlchemyError as e:
        structured_logger.error(message="Database error in request session", exception=e)
        raise DatabaseException(message="Database error")


async def get_db_health() -> Dict[str, Any]:
    return await db_manager.health_check()
