"""
Transactions: units of work framed by begin/commit/rollback on one leased
connection.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from graphsession.connection.base import BaseConnection
from graphsession.exception import (
    ConcurrentAccessError,
    ConnectivityError,
    GraphSessionError,
    TransactionError,
)
from graphsession.result import Result

logger = logging.getLogger(__name__)


class TransactionKind(Enum):
    AUTO_COMMIT = "auto_commit"
    MANAGED_READ = "managed_read"
    MANAGED_WRITE = "managed_write"
    EXPLICIT = "explicit"


class TransactionState(Enum):
    """Transaction state machine states"""

    OPEN = "open"  # Begun, accepting statements
    COMMITTED = "committed"  # Committed successfully
    ROLLED_BACK = "rolled_back"  # Rolled back by the caller
    FAILED = "failed"  # Aborted by a broken connection or the server


def merge_parameters(
    parameters: Optional[Mapping[str, Any]], kwparameters: Mapping[str, Any]
) -> Dict[str, Any]:
    merged = dict(parameters or {})
    merged.update(kwparameters)
    return merged


class Transaction:
    """A transaction over a leased connection.

    Explicit transactions are returned by ``Session.begin_transaction``
    and must be committed or rolled back by the caller. The owning session
    is notified through ``on_closed`` once the transaction reaches a
    terminal state, so that it can release the connection.
    """

    def __init__(
        self,
        connection: BaseConnection,
        kind: TransactionKind = TransactionKind.EXPLICIT,
        *,
        fetch_size: int = -1,
        on_closed: Optional[
            Callable[[Transaction], Awaitable[None]]
        ] = None,
    ) -> None:
        self.transaction_id = f"txn_{uuid4().hex[:8]}"
        self._connection = connection
        self._kind = kind
        self._fetch_size = fetch_size
        self._on_closed = on_closed
        self._state = TransactionState.OPEN
        self._results: List[Result] = []
        self._bookmark: Optional[str] = None
        self._finished = False

        logger.debug(
            "Transaction %s (%s) opened on %s",
            self.transaction_id,
            kind.value,
            connection.connection_id,
        )

    def __str__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self.transaction_id} "
            f"{self._kind.value} {self._state.value}>"
        )

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def kind(self) -> TransactionKind:
        return self._kind

    @property
    def is_open(self) -> bool:
        return self._state is TransactionState.OPEN

    @property
    def bookmark(self) -> Optional[str]:
        """Bookmark returned by a successful commit"""
        return self._bookmark

    @property
    def connection(self) -> BaseConnection:
        return self._connection

    def _check_open(self, action: str) -> None:
        if self._state is not TransactionState.OPEN:
            raise TransactionError(
                f"Cannot {action} transaction {self.transaction_id}: "
                f"it is {self._state.value}"
            )

    async def run(
        self,
        query: str,
        parameters: Optional[Mapping[str, Any]] = None,
        **kwparameters: Any,
    ) -> Result:
        """Send a parameterized statement within this transaction

        Statements are applied in the order they are sent. A result that
        is still streaming is buffered before the next statement is sent.
        """
        self._check_open("run a statement in")
        params = merge_parameters(parameters, kwparameters)
        await self._buffer_results()
        self._check_open("run a statement in")

        try:
            keys = await self._connection.run(query, params)
        except ConcurrentAccessError:
            raise
        except GraphSessionError as e:
            e.query = e.query or query
            e.parameters = e.parameters or params
            await self._fail(e)
            raise

        result = Result(
            self._connection,
            keys,
            query,
            params,
            fetch_size=self._fetch_size,
            on_done=self._on_result_done,
        )
        self._results.append(result)
        return result

    async def _on_result_done(self, error: Optional[BaseException]) -> None:
        if error is not None:
            await self._fail(error)

    async def _buffer_results(self) -> None:
        for result in self._results:
            if result.attached:
                await result._buffer_all()

    async def commit(self) -> Optional[str]:
        """Commit every statement sent since the transaction began

        Raises:
            TransactionError: If the transaction already terminated or the
                server rejected the commit

        Returns:
            Optional[str]: The bookmark of the commit
        """
        self._check_open("commit")
        logger.debug("Committing transaction %s", self.transaction_id)

        try:
            await self._buffer_results()
            self._check_open("commit")
            bookmark = await self._connection.commit()
        except (ConcurrentAccessError, TransactionError):
            raise
        except GraphSessionError as e:
            logger.error(
                "Commit failed for %s: %s", self.transaction_id, e
            )
            await self._fail(e)
            raise TransactionError(
                f"Failed to commit transaction {self.transaction_id}: "
                f"{e.message}",
                query=e.query,
                parameters=e.parameters,
                cause=e,
            ) from e

        self._state = TransactionState.COMMITTED
        self._bookmark = bookmark
        logger.info(
            "Transaction %s committed successfully", self.transaction_id
        )
        await self._finish()
        return bookmark

    async def rollback(self) -> None:
        """Discard every statement sent since the transaction began

        Rolling back a transaction that is already rolled back or failed
        does nothing.
        """
        if self._state in (
            TransactionState.ROLLED_BACK,
            TransactionState.FAILED,
        ):
            return
        self._check_open("roll back")

        logger.debug("Rolling back transaction %s", self.transaction_id)
        self._state = TransactionState.ROLLED_BACK
        for result in self._results:
            result._detach()

        try:
            await self._connection.rollback()
            logger.info(
                "Transaction %s rolled back successfully", self.transaction_id
            )
        except GraphSessionError as e:
            logger.critical(
                "Rollback failed for %s: %s", self.transaction_id, e
            )
            self._connection.mark_broken()
            raise TransactionError(
                f"Failed to rollback transaction {self.transaction_id}: "
                f"{e.message}",
                cause=e,
            ) from e
        finally:
            await self._finish()

    async def close(self) -> None:
        """Roll back if still open"""
        if self.is_open:
            await self.rollback()

    async def _fail(self, error: BaseException) -> None:
        if self._state is not TransactionState.OPEN:
            return
        self._state = TransactionState.FAILED
        if isinstance(error, ConnectivityError):
            self._connection.mark_broken()
        for result in self._results:
            result._detach()
        logger.warning(
            "Transaction %s failed: %s", self.transaction_id, error
        )
        await self._finish()

    async def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        if self._on_closed is not None:
            await self._on_closed(self)

    async def __aenter__(self) -> Transaction:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            if self.is_open:
                if exc_type is None:
                    await self.commit()
                else:
                    await self.rollback()
        except Exception as e:
            logger.error(
                "Error in context manager exit for %s: %s",
                self.transaction_id,
                e,
            )
            if exc_type is None:
                raise
        return False


class ManagedTransaction:
    """Handle passed to the work function of a managed transaction.

    Only statements can be run; committing and rolling back is left to the
    session, which may retry the whole work function.
    """

    def __init__(self, transaction: Transaction) -> None:
        self._transaction = transaction

    @property
    def transaction_id(self) -> str:
        return self._transaction.transaction_id

    @property
    def kind(self) -> TransactionKind:
        return self._transaction.kind

    @property
    def state(self) -> TransactionState:
        return self._transaction.state

    async def run(
        self,
        query: str,
        parameters: Optional[Mapping[str, Any]] = None,
        **kwparameters: Any,
    ) -> Result:
        return await self._transaction.run(query, parameters, **kwparameters)
