from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)
from uuid import uuid4

from graphsession.address import ServerAddress
from graphsession.auth import AuthToken
from graphsession.config import AccessMode, DriverConfig
from graphsession.exception import ConcurrentAccessError, ConnectivityError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionState(Enum):
    """Lifecycle of a physical connection inside the pool"""

    IDLE = "idle"
    LEASED = "leased"
    CLOSED = "closed"


class BaseConnection(ABC):
    """One physical connection to a database server.

    Subclasses provide the wire-level primitives (``_connect``, ``_begin``,
    ``_run``, ``_pull``, ``_commit``, ``_rollback``, ``_reset``, ``_close``)
    and translate their library's exceptions into graphsession errors. The
    public coroutines here track the connection state: any
    ``ConnectivityError`` marks the connection broken, and a broken
    connection is never recycled by the pool.
    """

    schemes: Tuple[str, ...] = ()
    registered_connections: Dict[str, Type[BaseConnection]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        for scheme in cls.schemes:
            BaseConnection.registered_connections[scheme] = cls

    def __init__(
        self,
        address: ServerAddress,
        auth: Optional[AuthToken],
        config: DriverConfig,
    ) -> None:
        self.address = address
        self.auth = auth
        self.config = config
        self.connection_id = f"conn_{uuid4().hex[:8]}"
        self.state = ConnectionState.IDLE
        self.broken = False
        self._opened = False
        self._in_transaction = False
        self._busy = False

    @abstractmethod
    async def _connect(self) -> None:
        """Negotiate the protocol and authenticate"""

    @abstractmethod
    async def _begin(
        self,
        database: Optional[str],
        mode: AccessMode,
        bookmarks: Sequence[str],
        metadata: Mapping[str, Any],
        timeout: Optional[float],
    ) -> None: ...

    @abstractmethod
    async def _run(
        self,
        query: str,
        parameters: Mapping[str, Any],
        database: Optional[str],
        mode: AccessMode,
        bookmarks: Sequence[str],
        metadata: Mapping[str, Any],
        timeout: Optional[float],
    ) -> List[str]: ...

    @abstractmethod
    async def _pull(self, n: int) -> Tuple[List[Sequence[Any]], bool]: ...

    @abstractmethod
    async def _commit(self) -> Optional[str]: ...

    @abstractmethod
    async def _rollback(self) -> None: ...

    @abstractmethod
    async def _reset(self) -> None: ...

    @abstractmethod
    async def _close(self) -> None: ...

    async def _summary(self) -> Dict[str, Any]:
        return {}

    def __str__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self.connection_id} {self.address}>"
        )

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @property
    def busy(self) -> bool:
        """Whether a request is awaiting the server"""
        return self._busy

    async def _guard(
        self, operation: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        if self.closed:
            raise ConnectivityError(
                f"Connection {self.connection_id} is closed",
                context={"address": self.address.url},
            )
        if self.broken:
            raise ConnectivityError(
                f"Connection {self.connection_id} is broken",
                context={"address": self.address.url},
            )
        if self._busy:
            raise ConcurrentAccessError(
                f"Connection {self.connection_id} is awaiting another "
                "request",
                context={"address": self.address.url},
            )
        self._busy = True
        try:
            return await operation(*args)
        except ConnectivityError:
            self.mark_broken()
            raise
        finally:
            self._busy = False

    def mark_broken(self) -> None:
        if not self.broken:
            logger.debug("Connection %s marked broken", self.connection_id)
        self.broken = True

    async def open(self) -> None:
        """Perform the handshake. Called once by the pool."""
        if self._opened:
            return
        try:
            await asyncio.wait_for(
                self._guard(self._connect),
                timeout=self.config.connection_timeout,
            )
        except asyncio.TimeoutError as e:
            self.mark_broken()
            raise ConnectivityError(
                f"Timed out connecting to {self.address}",
                cause=e,
                context={"timeout": self.config.connection_timeout},
            ) from e
        self._opened = True
        logger.debug("Opened %s", self)

    async def begin(
        self,
        database: Optional[str],
        mode: AccessMode,
        bookmarks: Sequence[str] = (),
        metadata: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        await self._guard(
            self._begin, database, mode, bookmarks, metadata or {}, timeout
        )
        self._in_transaction = True

    async def run(
        self,
        query: str,
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        database: Optional[str] = None,
        mode: AccessMode = AccessMode.WRITE,
        bookmarks: Sequence[str] = (),
        metadata: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> List[str]:
        """Send a statement; outside a transaction it auto-commits.

        Returns the keys (return aliases) of the records that follow.
        """
        return await self._guard(
            self._run,
            query,
            parameters or {},
            database,
            mode,
            bookmarks,
            metadata or {},
            timeout,
        )

    async def pull(self, n: int = -1) -> Tuple[List[Sequence[Any]], bool]:
        """Fetch up to ``n`` records (-1 for all) and a has-more flag"""
        return await self._guard(self._pull, n)

    async def summary(self) -> Dict[str, Any]:
        return await self._guard(self._summary)

    async def commit(self) -> Optional[str]:
        try:
            return await self._guard(self._commit)
        finally:
            self._in_transaction = False

    async def rollback(self) -> None:
        try:
            await self._guard(self._rollback)
        finally:
            self._in_transaction = False

    async def reset(self) -> None:
        """Return the connection to a clean state before it is reused"""
        await self._guard(self._reset)
        self._in_transaction = False

    async def close(self) -> None:
        if self.closed:
            return
        self.state = ConnectionState.CLOSED
        self._in_transaction = False
        try:
            await self._close()
            logger.debug("Closed %s", self)
        except Exception as e:
            logger.warning("Error closing %s: %s", self, e)
