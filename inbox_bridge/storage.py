import logging
import uuid
from typing import AsyncGenerator, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from inbox_bridge.config import settings

logger = logging.getLogger(__name__)

# Base class for main database models (companies registry)
Base = declarative_base()

# Base class for per-tenant database models
TenantBase = declarative_base()


def create_engine_for(url: str) -> AsyncEngine:
    """
    Create an async engine for a database URL.

    SQLite connections are bound to a worker thread by aiosqlite, so SQLite
    engines do not keep a pool and open a connection per checkout instead.
    """
    kwargs = {"echo": False}
    if url.startswith("sqlite"):
        kwargs["poolclass"] = NullPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


# Main database engine and session factory
engine = create_engine_for(settings.DATABASE_URL)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """
    Initialize the main database by creating the companies table.
    Called during application startup.
    """
    logger.debug(f"Initializing main database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from inbox_bridge import models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Main database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize main database: {e}")
        raise


async def init_tenant_schema(tenant_engine: AsyncEngine) -> None:
    """Create tenant tables that do not exist yet."""
    from inbox_bridge import models  # noqa: F401

    async with tenant_engine.begin() as conn:
        await conn.run_sync(TenantBase.metadata.create_all)
    logger.debug("Tenant schema ensured")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get a main database session.
    Yields a session and ensures it's closed after use.
    """
    async with SessionLocal() as db:
        yield db


async def check_db_health() -> bool:
    """
    Check if the main database is reachable and the companies table exists.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        async with SessionLocal() as db:
            await db.execute(text("SELECT 1"))
            from inbox_bridge.models import Company

            await db.execute(select(Company.id).limit(1))
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Company Repository Functions
# =============================================================================

async def get_company(db: AsyncSession, company_id: uuid.UUID):
    """
    Retrieve a company by its ID.

    Returns:
        Company object if found, None otherwise
    """
    from inbox_bridge.models import Company

    logger.debug(f"Looking up company by ID: {company_id}")
    result = await db.get(Company, company_id)
    logger.debug(f"Company lookup result: {'found' if result else 'not found'}")
    return result


def tenant_session(tenant_engine: AsyncEngine) -> AsyncSession:
    """Open a session on a tenant engine. Use as an async context manager."""
    return AsyncSession(tenant_engine, expire_on_commit=False)


async def create_company(
    db: AsyncSession,
    name: str,
    database_name: str,
    api_key: str,
    is_active: Optional[bool] = True,
    company_id: Optional[uuid.UUID] = None,
):
    """Register a tenant. Used by provisioning scripts and tests."""
    from inbox_bridge.models import Company

    company = Company(
        id=company_id or uuid.uuid4(),
        name=name,
        database_name=database_name,
        api_key=api_key,
        is_active=is_active,
    )
    db.add(company)
    await db.commit()
    logger.info(f"Company registered: id={company.id}, database={database_name}")
    return company
