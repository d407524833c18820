from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode

from neo4j import (
    READ_ACCESS,
    WRITE_ACCESS,
    AsyncGraphDatabase,
    Bookmarks,
    Query,
    basic_auth,
    bearer_auth,
    custom_auth,
    kerberos_auth,
)
from neo4j.exceptions import AuthError
from neo4j.exceptions import DriverError as Neo4jDriverError
from neo4j.exceptions import Neo4jError, ServiceUnavailable, SessionExpired
from neo4j.exceptions import TransactionError as Neo4jTransactionError

from graphsession.auth import AuthToken
from graphsession.config import AccessMode
from graphsession.exception import (
    AuthenticationError,
    ConnectivityError,
    GraphSessionError,
    StatementError,
    TransactionError,
)

from .base import BaseConnection

logger = logging.getLogger(__name__)

COUNTER_NAMES = (
    "nodes_created",
    "nodes_deleted",
    "relationships_created",
    "relationships_deleted",
    "properties_set",
    "labels_added",
    "labels_removed",
    "indexes_added",
    "indexes_removed",
    "constraints_added",
    "constraints_removed",
    "system_updates",
)


def to_neo4j_auth(token: Optional[AuthToken]) -> Any:
    if token is None:
        return None
    if token.scheme == "basic":
        return basic_auth(token.principal, token.credentials, token.realm)
    if token.scheme == "kerberos":
        return kerberos_auth(token.credentials)
    if token.scheme == "bearer":
        return bearer_auth(token.credentials)
    return custom_auth(
        token.principal,
        token.credentials,
        token.realm,
        token.scheme,
        **token.parameters,
    )


def translate_error(
    error: Exception,
    query: Optional[str] = None,
    parameters: Optional[Mapping[str, Any]] = None,
) -> GraphSessionError:
    """Map a ``neo4j`` exception onto the graphsession taxonomy"""
    if isinstance(error, GraphSessionError):
        return error
    kwargs: Dict[str, Any] = {
        "query": query,
        "parameters": parameters,
        "cause": error,
    }
    if isinstance(error, AuthError):
        return AuthenticationError(
            "The server rejected the supplied credentials", **kwargs
        )
    if isinstance(error, (ServiceUnavailable, SessionExpired, OSError)):
        return ConnectivityError(f"Connection lost: {error}", **kwargs)
    if isinstance(error, Neo4jError):
        return StatementError(
            error.message or str(error), code=error.code, **kwargs
        )
    if isinstance(error, Neo4jTransactionError):
        return TransactionError(str(error), **kwargs)
    if isinstance(error, Neo4jDriverError):
        return GraphSessionError(str(error), **kwargs)
    return GraphSessionError(f"Unexpected driver failure: {error}", **kwargs)


class Neo4jConnection(BaseConnection):
    """Physical connection backed by the official ``neo4j`` package.

    Each instance owns an ``AsyncDriver`` limited to a single socket, so one
    pooled connection maps to one server connection.
    """

    schemes = ("bolt", "bolt+s", "bolt+ssc", "neo4j", "neo4j+s", "neo4j+ssc")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._driver: Any = None
        self._session: Any = None
        self._transaction: Any = None
        self._result: Any = None
        self._query: Optional[str] = None
        self._parameters: Mapping[str, Any] = {}

    @property
    def uri(self) -> str:
        uri = self.address.url
        if self.address.routing_context:
            uri += f"?{urlencode(self.address.routing_context)}"
        return uri

    def _driver_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "auth": to_neo4j_auth(self.auth),
            "max_connection_pool_size": 1,
            "connection_timeout": self.config.connection_timeout,
            "connection_acquisition_timeout": (
                self.config.connection_acquisition_timeout
            ),
        }
        if self.config.user_agent:
            kwargs["user_agent"] = self.config.user_agent
        return kwargs

    def _open_session(
        self,
        database: Optional[str],
        mode: AccessMode,
        bookmarks: Sequence[str],
    ) -> Any:
        return self._driver.session(
            database=database,
            default_access_mode=(
                READ_ACCESS if mode is AccessMode.READ else WRITE_ACCESS
            ),
            bookmarks=Bookmarks.from_raw_values(bookmarks),
            fetch_size=self.config.fetch_size,
        )

    async def _connect(self) -> None:
        try:
            self._driver = AsyncGraphDatabase.driver(
                self.uri, **self._driver_kwargs()
            )
            await self._driver.verify_connectivity()
        except Exception as e:
            if self._driver is not None:
                await self._driver.close()
                self._driver = None
            raise translate_error(e) from e

    async def _begin(
        self,
        database: Optional[str],
        mode: AccessMode,
        bookmarks: Sequence[str],
        metadata: Mapping[str, Any],
        timeout: Optional[float],
    ) -> None:
        try:
            self._session = self._open_session(database, mode, bookmarks)
            self._transaction = await self._session.begin_transaction(
                metadata=dict(metadata) or None, timeout=timeout
            )
        except Exception as e:
            raise translate_error(e) from e

    async def _run(
        self,
        query: str,
        parameters: Mapping[str, Any],
        database: Optional[str],
        mode: AccessMode,
        bookmarks: Sequence[str],
        metadata: Mapping[str, Any],
        timeout: Optional[float],
    ) -> List[str]:
        self._query = query
        self._parameters = parameters
        try:
            if self._transaction is not None:
                self._result = await self._transaction.run(
                    query, dict(parameters)
                )
            else:
                self._session = self._open_session(database, mode, bookmarks)
                self._result = await self._session.run(
                    Query(
                        query, metadata=dict(metadata) or None, timeout=timeout
                    ),
                    dict(parameters),
                )
            return list(self._result.keys())
        except Exception as e:
            raise translate_error(e, query, parameters) from e

    async def _pull(self, n: int) -> Tuple[List[Sequence[Any]], bool]:
        if self._result is None:
            return [], False
        try:
            if n == -1:
                records = [record async for record in self._result]
                return [record.values() for record in records], False
            records = await self._result.fetch(n)
            has_more = await self._result.peek() is not None
            return [record.values() for record in records], has_more
        except Exception as e:
            raise translate_error(e, self._query, self._parameters) from e

    async def _summary(self) -> Dict[str, Any]:
        if self._result is None:
            return {}
        try:
            summary = await self._result.consume()
            data: Dict[str, Any] = {
                "database": summary.database,
                "counters": {
                    name: getattr(summary.counters, name)
                    for name in COUNTER_NAMES
                },
                "result_available_after": summary.result_available_after,
                "result_consumed_after": summary.result_consumed_after,
            }
            if self._transaction is None and self._session is not None:
                data["bookmark"] = self._first_bookmark(
                    await self._session.last_bookmarks()
                )
            return data
        except Exception as e:
            raise translate_error(e, self._query, self._parameters) from e

    @staticmethod
    def _first_bookmark(bookmarks: Any) -> Optional[str]:
        values = sorted(bookmarks.raw_values) if bookmarks else []
        return values[-1] if values else None

    async def _commit(self) -> Optional[str]:
        try:
            await self._transaction.commit()
            return self._first_bookmark(await self._session.last_bookmarks())
        except Exception as e:
            raise translate_error(e) from e
        finally:
            self._transaction = None

    async def _rollback(self) -> None:
        try:
            if self._transaction is not None:
                await self._transaction.rollback()
        except Exception as e:
            raise translate_error(e) from e
        finally:
            self._transaction = None

    async def _reset(self) -> None:
        self._result = None
        self._query = None
        self._parameters = {}
        try:
            if self._transaction is not None:
                await self._transaction.close()
            if self._session is not None:
                await self._session.close()
        except Exception as e:
            raise translate_error(e) from e
        finally:
            self._transaction = None
            self._session = None

    async def _close(self) -> None:
        try:
            await self._reset()
        finally:
            if self._driver is not None:
                await self._driver.close()
                self._driver = None
