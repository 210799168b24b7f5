"""Pooled PostgreSQL session with readonly enforcement."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Sequence

import asyncpg

from .config import ServerConfig, require_connection_string
from .errors import (
    ConfigurationError,
    DatabaseConnectionError,
    InvoluntaryDisconnectError,
    NotConnectedError,
    QueryExecutionError,
    ReadOnlyViolationError,
)
from .models import ConnectionInfo, PoolSettings, QueryParam

LOG = logging.getLogger(__name__)

POOL_ERROR_REASON = "pool connection error"
NORMAL_DISCONNECT_REASON = "normal disconnect"
HEALTH_CHECK_QUERY = "SELECT 1"
DEFAULT_PREFETCH = 500

RowCallback = Callable[[dict[str, Any]], "Awaitable[None] | None"]


class ObservedConnection(asyncpg.Connection):
    """asyncpg connection that remembers whether its close was asked for."""

    _close_requested = False

    @property
    def close_requested(self) -> bool:
        return self._close_requested

    async def close(self, *, timeout: float | None = None) -> None:
        self._close_requested = True
        await super().close(timeout=timeout)

    def terminate(self) -> None:
        self._close_requested = True
        super().terminate()


class ConnectionManager:
    """Owns the single active session and gates every query through it.

    Instances are created by the process entry point and handed to whatever
    needs database access; there is no module-level singleton.
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        env: Mapping[str, str] | None = None,
        prefetch: int = DEFAULT_PREFETCH,
        close_timeout: float = 10.0,
    ) -> None:
        self._config = config or ServerConfig()
        self._env = env
        self._prefetch = prefetch
        self._close_timeout = close_timeout
        self._pool: asyncpg.Pool | None = None
        self._connected = False
        self._settings = PoolSettings()
        self._readonly = self._settings.readonly
        self._connection_string: str | None = None
        self._disconnect_reason: str | None = None
        self._last_error: BaseException | None = None
        self._background: set[asyncio.Task[None]] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def readonly(self) -> bool:
        return self._readonly

    @property
    def pool_size(self) -> int:
        return self._settings.pool_size

    @property
    def idle_timeout_ms(self) -> int:
        return self._settings.idle_timeout_ms

    @property
    def connection_timeout_ms(self) -> int:
        return self._settings.connection_timeout_ms

    @property
    def connection_string(self) -> str | None:
        return self._connection_string

    @property
    def disconnect_reason(self) -> str | None:
        return self._disconnect_reason

    @property
    def last_connection_error(self) -> BaseException | None:
        return self._last_error

    @property
    def timezone(self) -> str:
        return self._config.timezone

    def set_readonly_mode(self, readonly: bool) -> None:
        self._readonly = readonly

    def connection_info(self) -> ConnectionInfo:
        """Snapshot of the session status; never touches the pool."""

        return ConnectionInfo(
            is_connected=self._connected,
            disconnect_reason=self._disconnect_reason,
            connection_error=str(self._last_error) if self._last_error else None,
        )

    def resolve_connection_string(self) -> str:
        """Connection string from the environment, falling back to the loaded config."""

        try:
            return require_connection_string(self._env)
        except ConfigurationError:
            if self._config.connection_string:
                return self._config.connection_string
            raise

    async def connect(
        self,
        readonly: bool = True,
        pool_size: int = 1,
        idle_timeout_ms: int = 30_000,
        connection_timeout_ms: int = 10_000,
    ) -> ConnectionInfo:
        """Open a new pool, probing it before the session counts as connected."""

        dsn = self.resolve_connection_string()
        if pool_size < 1:
            raise ConfigurationError(f"Pool size must be at least 1 (got {pool_size}).")
        if self._connected or self._pool is not None:
            await self.disconnect("reconnect")

        settings = PoolSettings(
            readonly=readonly,
            pool_size=pool_size,
            idle_timeout_ms=idle_timeout_ms,
            connection_timeout_ms=connection_timeout_ms,
        )
        timeout = connection_timeout_ms / 1000
        pool: asyncpg.Pool | None = None
        try:
            pool = await asyncpg.create_pool(
                dsn,
                min_size=0,
                max_size=pool_size,
                max_inactive_connection_lifetime=idle_timeout_ms / 1000,
                timeout=timeout,
                server_settings={"timezone": self._config.timezone},
                init=self._observe_connection,
                connection_class=ObservedConnection,
            )
            async with pool.acquire(timeout=timeout) as conn:
                await conn.fetchval(HEALTH_CHECK_QUERY)
        except Exception as exc:
            if pool is not None:
                await self._release_pool(pool)
            self._connected = False
            self._last_error = exc
            LOG.warning("PostgreSQL connection health check failed: %s", exc)
            raise DatabaseConnectionError(f"Failed to connect to PostgreSQL: {exc}") from exc

        self._pool = pool
        self._settings = settings
        self._readonly = readonly
        self._connection_string = dsn
        self._connected = True
        self._disconnect_reason = None
        self._last_error = None
        LOG.info(
            "Connected to PostgreSQL (readonly=%s, pool_size=%d)",
            readonly,
            pool_size,
        )
        return self.connection_info()

    async def disconnect(self, reason: str = NORMAL_DISCONNECT_REASON) -> None:
        """Close the pool if one is open; safe to call repeatedly."""

        pool = self._pool
        if pool is None:
            return
        self._pool = None
        self._connected = False
        self._connection_string = None
        self._disconnect_reason = reason
        self._last_error = None
        await self._release_pool(pool)
        LOG.info("Disconnected from PostgreSQL (%s)", reason)

    async def shutdown(self) -> None:
        """Disconnect and wait for any pool released in the background."""

        await self.disconnect("shutdown")
        if self._background:
            await asyncio.gather(*tuple(self._background), return_exceptions=True)

    async def execute_query(
        self,
        sql: str,
        params: Sequence[QueryParam] = (),
        *,
        force_readonly: bool | None = None,
    ) -> list[dict[str, Any]]:
        """Run ``sql`` and return every row; readonly runs inside ``BEGIN READ ONLY``."""

        pool = self._require_pool()
        readonly = self._effective_readonly(force_readonly)
        try:
            async with pool.acquire(timeout=self._acquire_timeout) as conn:
                if readonly:
                    async with conn.transaction(readonly=True):
                        records = await conn.fetch(sql, *params)
                else:
                    records = await conn.fetch(sql, *params)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, asyncio.TimeoutError) as exc:
            raise _translate_error(exc) from exc
        return [dict(record) for record in records]

    @asynccontextmanager
    async def cursor(
        self,
        sql: str,
        params: Sequence[QueryParam] = (),
        *,
        force_readonly: bool | None = None,
        prefetch: int | None = None,
    ) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        """Yield rows pulled from a server-side cursor, in engine order.

        The pooled connection is held for the lifetime of the context and
        returned on every exit path.
        """

        pool = self._require_pool()
        readonly = self._effective_readonly(force_readonly)
        try:
            async with pool.acquire(timeout=self._acquire_timeout) as conn:
                async with conn.transaction(readonly=readonly):
                    factory = conn.cursor(sql, *params, prefetch=prefetch or self._prefetch)
                    rows = _iterate_records(factory)
                    try:
                        yield rows
                    finally:
                        await rows.aclose()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, asyncio.TimeoutError) as exc:
            raise _translate_error(exc) from exc

    async def stream_query(
        self,
        sql: str,
        params: Sequence[QueryParam],
        on_row: RowCallback,
        *,
        force_readonly: bool | None = None,
    ) -> int:
        """Deliver rows one at a time to ``on_row``; returns the delivered count.

        Each callback (awaited when it returns an awaitable) completes before
        the next row is pulled, so a slow consumer pauses the cursor.
        """

        delivered = 0
        async with self.cursor(sql, params, force_readonly=force_readonly) as rows:
            async for row in rows:
                result = on_row(row)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
        return delivered

    @property
    def _acquire_timeout(self) -> float:
        return self._settings.connection_timeout_ms / 1000

    def _effective_readonly(self, force_readonly: bool | None) -> bool:
        return self._readonly or force_readonly is True

    def _require_pool(self) -> asyncpg.Pool:
        if not self._connected or self._pool is None:
            if self._disconnect_reason == POOL_ERROR_REASON and self._last_error is not None:
                raise NotConnectedError(
                    f"Not connected to PostgreSQL ({POOL_ERROR_REASON}: {self._last_error}). "
                    "Please connect first."
                )
            raise NotConnectedError()
        return self._pool

    async def _observe_connection(self, connection: asyncpg.Connection) -> None:
        connection.add_termination_listener(self._on_connection_terminated)

    def _on_connection_terminated(self, connection: asyncpg.Connection) -> None:
        if getattr(connection, "close_requested", False) or not self._connected:
            return
        pool = self._pool
        self._pool = None
        self._connected = False
        self._disconnect_reason = POOL_ERROR_REASON
        self._last_error = InvoluntaryDisconnectError("Pooled connection to PostgreSQL terminated unexpectedly.")
        LOG.warning("Lost pooled PostgreSQL connection; session marked disconnected")
        if pool is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            pool.terminate()
            return
        task = loop.create_task(self._release_pool(pool))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _release_pool(self, pool: asyncpg.Pool) -> None:
        try:
            await asyncio.wait_for(pool.close(), timeout=self._close_timeout)
        except Exception as exc:  # pragma: no cover - best effort cleanup
            LOG.warning("Pool did not close cleanly, terminating: %s", exc)
            pool.terminate()


async def _iterate_records(factory: Any) -> AsyncIterator[dict[str, Any]]:
    async for record in factory:
        yield dict(record)


def _translate_error(exc: BaseException) -> QueryExecutionError:
    sqlstate = getattr(exc, "sqlstate", None)
    if isinstance(exc, asyncpg.exceptions.ReadOnlySQLTransactionError):
        return ReadOnlyViolationError(str(exc), sqlstate=sqlstate)
    if isinstance(exc, asyncio.TimeoutError):
        return QueryExecutionError("Timed out waiting for PostgreSQL.")
    return QueryExecutionError(str(exc), sqlstate=sqlstate)


__all__ = [
    "ConnectionManager",
    "NORMAL_DISCONNECT_REASON",
    "ObservedConnection",
    "POOL_ERROR_REASON",
]
