from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Deque, Optional, Set, Type, Union

from graphsession.address import ServerAddress
from graphsession.auth import AuthToken
from graphsession.config import AccessMode, DriverConfig
from graphsession.connection.base import BaseConnection, ConnectionState
from graphsession.exception import (
    DriverError,
    GraphSessionError,
    PoolExhausted,
)

logger = logging.getLogger(__name__)


class _OpenSlot:
    """Handed to a waiter instead of a connection: open a new one"""


_OPEN_SLOT = _OpenSlot()


@dataclass
class PoolStatistics:
    created: int = 0
    acquired: int = 0
    released: int = 0
    closed: int = 0
    waited: int = 0
    timed_out: int = 0
    idle: int = 0
    in_use: int = 0


class ConnectionPool:
    """A bounded set of connections to one server address.

    Connections are lent to one session at a time. When the pool is full,
    callers wait in FIFO order and a released connection is handed to the
    oldest waiter directly.
    """

    def __init__(
        self,
        address: ServerAddress,
        auth: Optional[AuthToken],
        config: DriverConfig,
        connection_class: Type[BaseConnection],
    ) -> None:
        self.address = address
        self.auth = auth
        self.config = config
        self.connection_class = connection_class
        self._lock = asyncio.Lock()
        self._idle: Deque[BaseConnection] = deque()
        self._leased: Set[BaseConnection] = set()
        self._waiters: Deque[asyncio.Future] = deque()
        self._opening = 0
        self._closed = False
        self._statistics = PoolStatistics()

    def __str__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self.address} "
            f"{self.in_use}/{self.max_size} in use>"
        )

    @property
    def max_size(self) -> int:
        return self.config.max_connection_pool_size

    @property
    def size(self) -> int:
        return len(self._idle) + len(self._leased) + self._opening

    @property
    def idle(self) -> int:
        return len(self._idle)

    @property
    def in_use(self) -> int:
        return len(self._leased)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def statistics(self) -> PoolStatistics:
        return replace(self._statistics, idle=self.idle, in_use=self.in_use)

    def _check_open(self) -> None:
        if self._closed:
            raise DriverError(f"Connection pool for {self.address} is closed")

    def _new_connection(self) -> BaseConnection:
        return self.connection_class(self.address, self.auth, self.config)

    def _lease(self, connection: BaseConnection) -> BaseConnection:
        connection.state = ConnectionState.LEASED
        self._leased.add(connection)
        self._statistics.acquired += 1
        return connection

    def _hand_off(self, connection: BaseConnection) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._statistics.acquired += 1
                waiter.set_result(connection)
                logger.debug(
                    "Handed %s to a waiting caller", connection.connection_id
                )
                return
        self._leased.discard(connection)
        connection.state = ConnectionState.IDLE
        self._idle.append(connection)

    def _pass_slot(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._opening += 1
                waiter.set_result(_OPEN_SLOT)
                return

    async def acquire(
        self,
        database: Optional[str] = None,
        mode: AccessMode = AccessMode.WRITE,
        timeout: Optional[float] = None,
    ) -> BaseConnection:
        """Lend a connection, opening one if the pool is below its maximum

        Args:
            database (str, optional): Target database, used for logging.
            mode (AccessMode, optional): Access mode of the unit of work.
            timeout (float, optional): Seconds to wait for a connection when
                the pool is full. Defaults to the configured
                `connection_acquisition_timeout`.

        Raises:
            PoolExhausted: If no connection becomes available in time
            DriverError: If the pool is closed

        Returns:
            BaseConnection: A connection leased to the caller
        """
        if timeout is None:
            timeout = self.config.connection_acquisition_timeout

        waiter: Optional[asyncio.Future] = None
        async with self._lock:
            self._check_open()
            if self._idle:
                connection = self._lease(self._idle.pop())
                logger.debug(
                    "Acquired idle %s for database=%s mode=%s",
                    connection.connection_id,
                    database,
                    mode.name,
                )
                return connection
            if self.size < self.max_size:
                self._opening += 1
            else:
                waiter = asyncio.get_running_loop().create_future()
                self._waiters.append(waiter)
                self._statistics.waited += 1

        if waiter is not None:
            logger.debug(
                "Pool for %s is full (%d), waiting up to %ss",
                self.address,
                self.max_size,
                timeout,
            )
            result = await self._wait(waiter, timeout)
            if not isinstance(result, _OpenSlot):
                return result

        return await self._open_leased()

    async def _wait(
        self, waiter: asyncio.Future, timeout: float
    ) -> Union[BaseConnection, _OpenSlot]:
        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except asyncio.TimeoutError:
            if waiter.done() and not waiter.cancelled():
                return waiter.result()
            waiter.cancel()
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            self._statistics.timed_out += 1
            raise PoolExhausted(
                f"No connection to {self.address} became available within "
                f"{timeout}s",
                context={"max_size": self.max_size, "timeout": timeout},
            )
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                if waiter.exception() is None:
                    self._give_back(waiter.result())
            else:
                waiter.cancel()
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
            raise

    def _give_back(self, result: Any) -> None:
        if isinstance(result, _OpenSlot):
            self._opening -= 1
            self._pass_slot()
        else:
            self._statistics.acquired -= 1
            self._hand_off(result)

    async def _open_leased(self) -> BaseConnection:
        connection = self._new_connection()
        try:
            await connection.open()
        except BaseException:
            async with self._lock:
                self._opening -= 1
                if not self._closed:
                    self._pass_slot()
            await connection.close()
            raise

        async with self._lock:
            self._opening -= 1
            self._statistics.created += 1
            closed = self._closed
            if not closed:
                self._lease(connection)

        if closed:
            await connection.close()
            self._statistics.closed += 1
            self._check_open()

        logger.debug("Opened and acquired %s", connection)
        return connection

    async def release(self, connection: BaseConnection) -> None:
        """Return a connection to the pool

        Healthy connections are reset and recycled. Broken connections are
        closed and their slot passed to the next waiter.
        """
        if connection not in self._leased:
            return

        healthy = not connection.broken and not self._closed
        if healthy:
            try:
                await connection.reset()
            except GraphSessionError as e:
                logger.warning(
                    "Could not reset %s, discarding it: %s", connection, e
                )
                healthy = False

        async with self._lock:
            if connection not in self._leased:
                return
            self._statistics.released += 1
            if healthy and not self._closed:
                self._hand_off(connection)
                logger.debug("Released %s", connection.connection_id)
                return
            self._leased.discard(connection)
            if not self._closed:
                self._pass_slot()

        logger.debug("Discarding broken %s", connection)
        await connection.close()
        self._statistics.closed += 1

    async def verify_connectivity(self) -> None:
        """Open and validate one connection without lending it

        Raises:
            AuthenticationError: If the credentials are rejected
            ConnectivityError: If the server cannot be reached
        """
        self._check_open()
        connection = self._new_connection()
        try:
            await connection.open()
        finally:
            await connection.close()
        logger.info("Verified connectivity to %s", self.address)

    async def close(self) -> None:
        """Close every connection, idle or leased, and fail all waiters"""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(
                        DriverError(
                            f"Connection pool for {self.address} was closed"
                        )
                    )
            connections = list(self._idle) + list(self._leased)
            self._idle.clear()
            self._leased.clear()

        for connection in connections:
            if connection.state is ConnectionState.LEASED:
                connection.mark_broken()
            await connection.close()
            self._statistics.closed += 1
        logger.info(
            "Closed connection pool for %s (%d connections)",
            self.address,
            len(connections),
        )
