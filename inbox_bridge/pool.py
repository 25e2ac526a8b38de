"""
Per-tenant database engine cache.

One AsyncEngine is kept per logical database name. Engines are shared by
every request of that tenant; an AsyncEngine is itself a connection pool, so
callers never own it exclusively and must not dispose it.

Lookups are lock-free reads of the cache followed by a liveness ping.
Creation and replacement are serialized per database name, so a slow
connect for one tenant never blocks lookups for another.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from inbox_bridge.errors import InvalidInputError, StorageError
from inbox_bridge.metrics import set_pool_size
from inbox_bridge.storage import create_engine_for
from inbox_bridge.validation import is_valid_logical_name

logger = logging.getLogger(__name__)

EngineFactory = Callable[[str], AsyncEngine]
EngineInitializer = Callable[[AsyncEngine], Awaitable[None]]


class TenantConnectionPool:
    """
    Cache of tenant engines keyed by logical database name.

    Args:
        url_template: database URL containing a "{db_name}" placeholder
        max_size: least-recently-used bound on cached engines, 0 = unbounded
        initializer: awaited once for every newly opened engine
        engine_factory: builds an engine from a URL
    """

    def __init__(
        self,
        url_template: str,
        *,
        max_size: int = 0,
        initializer: Optional[EngineInitializer] = None,
        engine_factory: EngineFactory = create_engine_for,
    ):
        if "{db_name}" not in url_template:
            raise ValueError("url_template must contain a {db_name} placeholder")
        self.url_template = url_template
        self.max_size = max_size
        self._initializer = initializer
        self._engine_factory = engine_factory
        self._engines: "OrderedDict[str, AsyncEngine]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._disposals: Set["asyncio.Future[None]"] = set()

    async def get_connection(self, database_name: str) -> AsyncEngine:
        """
        Return a live engine for the tenant database, opening one if needed.

        Raises:
            InvalidInputError: database name contains forbidden characters
            StorageError: the database could not be reached
        """
        if not is_valid_logical_name(database_name):
            raise InvalidInputError("Invalid database name format", code="invalid_name")

        cached = self._engines.get(database_name)
        if cached is not None:
            if await self.ping(cached):
                logger.debug(f"Reusing existing connection for database: {database_name}")
                self._engines.move_to_end(database_name)
                return cached
            logger.warning(f"Connection to database {database_name} is dead, will create new one")

        lock = self._locks.setdefault(database_name, asyncio.Lock())
        async with lock:
            current = self._engines.get(database_name)
            # Another task replaced the entry while we waited for the lock
            if current is not None and current is not cached and await self.ping(current):
                return current
            if current is not None:
                self._engines.pop(database_name, None)
                await self._dispose(database_name, current)

            new_engine = await self._open(database_name)
            self._engines[database_name] = new_engine
            self._evict_overflow()
            set_pool_size(len(self._engines))
            return new_engine

    async def ping(self, tenant_engine: AsyncEngine) -> bool:
        """Cheap round-trip to verify the engine can still reach its database."""
        try:
            async with tenant_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.debug(f"Connection ping failed: {e}")
            return False

    async def remove(self, database_name: str) -> bool:
        """Force eviction of a cached engine. Returns True if one was cached."""
        tenant_engine = self._engines.pop(database_name, None)
        if tenant_engine is None:
            return False
        self._release_lock(database_name)
        await self._dispose(database_name, tenant_engine)
        set_pool_size(len(self._engines))
        logger.info(f"Removed cached connection for database: {database_name}")
        return True

    async def close_all(self) -> None:
        """Dispose every cached engine. Called on shutdown."""
        engines = list(self._engines.items())
        self._engines.clear()
        for database_name, tenant_engine in engines:
            logger.info(f"Closing connection to database: {database_name}")
            await self._dispose(database_name, tenant_engine)
        if self._disposals:
            await asyncio.gather(*self._disposals)
        self._locks.clear()
        set_pool_size(0)

    def list_active(self) -> List[str]:
        return list(self._engines.keys())

    def count(self) -> int:
        return len(self._engines)

    def build_url(self, database_name: str) -> str:
        return self.url_template.replace("{db_name}", database_name)

    async def _open(self, database_name: str) -> AsyncEngine:
        logger.info(f"Creating new connection pool for database: {database_name}")
        tenant_engine = self._engine_factory(self.build_url(database_name))
        try:
            async with tenant_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            if self._initializer is not None:
                await self._initializer(tenant_engine)
        except Exception as e:
            logger.error(f"Failed to connect to database {database_name}: {e}")
            await tenant_engine.dispose()
            raise StorageError(
                f"Failed to connect to tenant database {database_name}",
                code="connect_failed",
            ) from e

        logger.info(f"Successfully created and cached connection for database: {database_name}")
        return tenant_engine

    def _evict_overflow(self) -> None:
        if self.max_size <= 0:
            return
        while len(self._engines) > self.max_size:
            database_name, tenant_engine = self._engines.popitem(last=False)
            logger.info(f"Evicting least recently used connection: {database_name}")
            # In-flight sessions keep their checked-out connections until they return them
            self._release_lock(database_name)
            task = asyncio.ensure_future(self._dispose(database_name, tenant_engine))
            self._disposals.add(task)
            task.add_done_callback(self._disposals.discard)

    def _release_lock(self, database_name: str) -> None:
        lock = self._locks.get(database_name)
        if lock is not None and not lock.locked():
            del self._locks[database_name]

    async def _dispose(self, database_name: str, tenant_engine: AsyncEngine) -> None:
        try:
            await tenant_engine.dispose()
        except Exception as e:
            logger.error(f"Error closing connection to {database_name}: {e}")
