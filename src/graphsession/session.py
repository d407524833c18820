from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)
from uuid import uuid4

from graphsession.config import AccessMode, SessionConfig
from graphsession.connection.base import BaseConnection
from graphsession.exception import (
    ConcurrentAccessError,
    ConnectivityError,
    GraphSessionError,
    SessionClosed,
    TransactionError,
)
from graphsession.result import Result
from graphsession.transaction import (
    ManagedTransaction,
    Transaction,
    TransactionKind,
    TransactionState,
    merge_parameters,
)

if TYPE_CHECKING:
    from graphsession.driver import Driver

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Session:
    """
    A client-side grouping of sequential units of work against one
    database. Connections are borrowed from the driver's pool for each
    unit of work and returned once it completes.

    A session is not safe for concurrent use: overlapping calls raise
    `ConcurrentAccessError`. Open one session per concurrent task.

    Example:

    ```python
    async with driver.session(database="neo4j") as session:
        result = await session.run("MATCH (p:Person) RETURN p.name AS name")
        names = [record["name"] async for record in result]
    ```
    """

    def __init__(self, driver: Driver, config: SessionConfig) -> None:
        self.session_id = f"session_{uuid4().hex[:8]}"
        self._driver = driver
        self._pool = driver.pool
        self._config = config.with_defaults(driver.config)
        self._bookmarks: Tuple[str, ...] = self._config.bookmarks
        self._closed = False
        self._in_flight = False
        self._connection: Optional[BaseConnection] = None
        self._transaction: Optional[Transaction] = None
        self._auto_result: Optional[Result] = None

    def __str__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self.session_id} "
            f"database={self.database} "
            f"mode={self._config.default_access_mode.name}>"
        )

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def database(self) -> Optional[str]:
        return self._config.database

    @property
    def default_access_mode(self) -> AccessMode:
        return self._config.default_access_mode

    @property
    def closed(self) -> bool:
        return self._closed

    def last_bookmarks(self) -> Tuple[str, ...]:
        """Bookmarks of the last unit of work committed by this session"""
        return self._bookmarks

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosed(f"Session {self.session_id} is closed")

    def _check_no_transaction(self) -> None:
        if self._transaction is not None and self._transaction.is_open:
            raise TransactionError(
                f"Session {self.session_id} already has an open "
                f"transaction {self._transaction.transaction_id}. Commit or "
                "roll it back before starting another unit of work."
            )

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[None]:
        self._check_open()
        if self._in_flight or (
            self._connection is not None and self._connection.busy
        ):
            raise ConcurrentAccessError(
                f"Session {self.session_id} is already executing a unit of "
                "work. Sessions must not be shared between concurrent tasks."
            )
        self._check_no_transaction()
        self._in_flight = True
        try:
            await self._buffer_auto_result()
            yield
        finally:
            self._in_flight = False

    async def _buffer_auto_result(self) -> None:
        result = self._auto_result
        if result is not None and result.attached:
            await result._buffer_all()
        self._auto_result = None

    async def _acquire(self, mode: AccessMode) -> BaseConnection:
        connection = await self._pool.acquire(self.database, mode)
        self._connection = connection
        return connection

    async def _release(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await self._pool.release(connection)

    async def run(
        self,
        query: str,
        parameters: Optional[Mapping[str, Any]] = None,
        **kwparameters: Any,
    ) -> Result:
        """Run a statement in an auto-commit transaction

        The statement is never retried: any failure, transient or not, is
        raised to the caller. The connection is returned to the pool once
        the result is exhausted or consumed.

        Args:
            query (str): Parameterized statement text
            parameters (Mapping[str, Any], optional): Statement parameters.
                Keyword arguments are merged in. Defaults to `None`.

        Returns:
            Result: A stream of records
        """
        params = merge_parameters(parameters, kwparameters)
        async with self._unit_of_work():
            connection = await self._acquire(
                self._config.default_access_mode
            )
            try:
                keys = await connection.run(
                    query,
                    params,
                    database=self.database,
                    mode=self._config.default_access_mode,
                    bookmarks=self._bookmarks,
                    metadata=self._config.transaction_metadata,
                    timeout=self._config.transaction_timeout,
                )
            except GraphSessionError as e:
                e.query = e.query or query
                e.parameters = e.parameters or params
                await self._release()
                raise
            except BaseException:
                connection.mark_broken()
                await self._release()
                raise

            result = Result(
                connection,
                keys,
                query,
                params,
                fetch_size=self._config.fetch_size or -1,
                on_done=self._on_auto_commit_done,
            )
            self._auto_result = result
            return result

    async def _on_auto_commit_done(
        self, error: Optional[BaseException]
    ) -> None:
        result, self._auto_result = self._auto_result, None
        summary = getattr(result, "_summary", None)
        if error is None and summary is not None:
            bookmark = summary.metadata.get("bookmark")
            if bookmark:
                self._bookmarks = (bookmark,)
        await self._release()

    async def begin_transaction(
        self,
        metadata: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Transaction:
        """Begin an explicit transaction

        The caller must commit or roll back the transaction; it is never
        retried. Only one transaction may be open per session.

        Args:
            metadata (Dict[str, Any], optional): Metadata attached to the
                transaction on the server. Defaults to `None`.
            timeout (float, optional): Server-side transaction timeout in
                seconds. Defaults to `None`.

        Raises:
            TransactionError: If another transaction is still open

        Returns:
            Transaction: The open transaction
        """
        async with self._unit_of_work():
            return await self._begin(
                TransactionKind.EXPLICIT,
                self._config.default_access_mode,
                metadata,
                timeout,
            )

    async def _begin(
        self,
        kind: TransactionKind,
        mode: AccessMode,
        metadata: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Transaction:
        connection = await self._acquire(mode)
        try:
            await connection.begin(
                self.database,
                mode,
                self._bookmarks,
                metadata or self._config.transaction_metadata,
                timeout or self._config.transaction_timeout,
            )
        except BaseException as e:
            if not isinstance(e, GraphSessionError):
                connection.mark_broken()
            await self._release()
            raise

        transaction = Transaction(
            connection,
            kind,
            fetch_size=self._config.fetch_size or -1,
            on_closed=self._on_transaction_closed,
        )
        self._transaction = transaction
        return transaction

    async def _on_transaction_closed(self, transaction: Transaction) -> None:
        if transaction is self._transaction:
            self._transaction = None
        if (
            transaction.state is TransactionState.COMMITTED
            and transaction.bookmark
        ):
            self._bookmarks = (transaction.bookmark,)
        if self._connection is transaction.connection:
            await self._release()

    async def execute_read(
        self,
        work: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run ``work`` in a managed read transaction

        ``work`` is awaited as ``work(tx, *args, **kwargs)`` where ``tx`` is
        a `ManagedTransaction`. It is committed when ``work`` returns and
        retried on transient failures, so ``work`` must be idempotent.

        Returns:
            The value returned by ``work``
        """
        return await self._run_transaction(
            AccessMode.READ, work, args, kwargs
        )

    async def execute_write(
        self,
        work: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run ``work`` in a managed write transaction

        See `execute_read`. ``work`` may be invoked more than once and must
        be idempotent.
        """
        return await self._run_transaction(
            AccessMode.WRITE, work, args, kwargs
        )

    read_transaction = execute_read
    write_transaction = execute_write

    async def _run_transaction(
        self,
        mode: AccessMode,
        work: Callable[..., Awaitable[Any]],
        args: Tuple[Any, ...],
        kwargs: Dict[str, Any],
    ) -> Any:
        kind = (
            TransactionKind.MANAGED_READ
            if mode is AccessMode.READ
            else TransactionKind.MANAGED_WRITE
        )

        async def attempt(number: int) -> Any:
            self._check_open()
            transaction = await self._begin(kind, mode)
            logger.debug(
                "Attempt %d of %s in %s",
                number,
                transaction.transaction_id,
                self.session_id,
            )
            try:
                value = await work(
                    ManagedTransaction(transaction), *args, **kwargs
                )
            except BaseException:
                await self._abort(transaction)
                raise
            await transaction.commit()
            return value

        async with self._unit_of_work():
            return await self._driver.retry_policy.execute(attempt)

    async def _abort(self, transaction: Transaction) -> None:
        if not transaction.is_open:
            return
        try:
            await transaction.rollback()
        except TransactionError as e:
            logger.warning(
                "Rollback of %s after a failed unit of work also failed: %s",
                transaction.transaction_id,
                e,
            )

    async def close(self) -> None:
        """Close the session

        An open explicit transaction is rolled back and the connection is
        returned to the pool. If a unit of work is still in flight, its
        connection is closed instead of being reused and an open
        transaction fails.
        """
        if self._closed:
            return
        self._closed = True

        connection = self._connection
        if self._in_flight or (connection is not None and connection.busy):
            logger.warning(
                "Session %s closed with a unit of work in flight, "
                "cancelling its connection",
                self.session_id,
            )
            if connection is not None:
                connection.mark_broken()
            if self._transaction is not None:
                await self._transaction._fail(
                    ConnectivityError(
                        f"Session {self.session_id} closed with a unit of "
                        "work in flight"
                    )
                )
            await self._release()
            return

        if self._auto_result is not None:
            try:
                await self._buffer_auto_result()
            except GraphSessionError as e:
                logger.warning(
                    "Error consuming the result of %s on close: %s",
                    self.session_id,
                    e,
                )
        if self._transaction is not None and self._transaction.is_open:
            logger.debug(
                "Rolling back open transaction %s on close",
                self._transaction.transaction_id,
            )
            try:
                await self._transaction.rollback()
            except TransactionError as e:
                logger.warning(
                    "Error rolling back %s on close: %s",
                    self._transaction.transaction_id,
                    e,
                )
        await self._release()
        logger.debug("Session %s closed", self.session_id)

    async def __aenter__(self) -> Session:
        self._check_open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
