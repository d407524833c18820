from __future__ import annotations

import logging
from typing import Any, Optional, Tuple, Type, Union

from graphsession.address import ServerAddress, parse_url
from graphsession.auth import AuthToken, basic
from graphsession.config import AccessMode, DriverConfig, SessionConfig
from graphsession.connection.base import BaseConnection
from graphsession.connection.neo4j import Neo4jConnection
from graphsession.exception import (
    AuthenticationError,
    ConfigurationError,
    DriverError,
)
from graphsession.pool import ConnectionPool
from graphsession.registry import DriverRegistry
from graphsession.result import EagerResult
from graphsession.retry import RetryPolicy
from graphsession.session import Session
from graphsession.transaction import ManagedTransaction, merge_parameters

logger = logging.getLogger(__name__)

DEFAULT_CONNECTION = Neo4jConnection

Auth = Union[AuthToken, Tuple[str, str], None]


def _to_auth_token(auth: Auth) -> Optional[AuthToken]:
    if auth is None or isinstance(auth, AuthToken):
        return auth
    if isinstance(auth, tuple) and len(auth) in (2, 3):
        return basic(*auth)
    raise ConfigurationError(
        "auth: must be an AuthToken or a (username, password) tuple"
    )


class Driver:
    """Entry point for talking to one graph database address.

    A driver owns the connection pool and hands out sessions. Create it
    once and close it when the process shuts down; `init` and `shutdown`
    manage a process-wide instance.

    Example:

    ```python
    async def run():
        driver = graphsession.driver(
            "neo4j://localhost:7687", auth=basic("neo4j", "password")
        )
        await driver.verify_connectivity()
        async with driver.session(database="neo4j") as session:
            ...
        await driver.close()
    ```
    """

    def __init__(
        self,
        url: str,
        auth: Auth = None,
        *,
        config: Optional[DriverConfig] = None,
        **kwargs: Any,
    ) -> None:
        """Initializer for a Driver instance

        Args:
            url (str): Connection URL, ``scheme://host:port``. The scheme
                selects plain (``bolt``), encrypted (``+s``, ``+ssc``) or
                cluster routing (``neo4j``) connections.
            auth (AuthToken, optional): Credentials presented during the
                handshake. A ``(username, password)`` tuple is accepted as
                basic auth. Defaults to `None`.
            config (DriverConfig, optional): Complete driver configuration.
                Mutually exclusive with keyword settings. Defaults to `None`.

        Raises:
            ConfigurationError: If the URL, auth or configuration is invalid
        """
        if config is not None and kwargs:
            raise ConfigurationError(
                "Conflict with config and keyword configuration"
            )
        self._address = parse_url(url)
        self._auth = _to_auth_token(auth)
        self._config = config or DriverConfig.from_kwargs(**kwargs)
        connection_class = self._config.connection_class or (
            self._get_connection_class(self._address)
        )
        if not (
            isinstance(connection_class, type)
            and issubclass(connection_class, BaseConnection)
        ):
            raise ConfigurationError(
                "connection_class: must be a subclass of BaseConnection"
            )
        self._pool = ConnectionPool(
            self._address, self._auth, self._config, connection_class
        )
        self._retry_policy = RetryPolicy.from_config(self._config)
        self._closed = False
        logger.debug("Driver created for %s", self._address)

    def __str__(self) -> str:
        return f"<{self.__class__.__name__} {self._address}>"

    @staticmethod
    def _get_connection_class(address: ServerAddress) -> Type[BaseConnection]:
        connection_type = BaseConnection.registered_connections.get(
            address.scheme
        )
        return connection_type or DEFAULT_CONNECTION

    @property
    def address(self) -> ServerAddress:
        return self._address

    @property
    def auth(self) -> Optional[AuthToken]:
        return self._auth

    @property
    def config(self) -> DriverConfig:
        return self._config

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def encrypted(self) -> bool:
        return self._address.encrypted

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise DriverError(f"Driver for {self._address} is closed")

    def session(
        self,
        database: Optional[str] = None,
        default_access_mode: AccessMode = AccessMode.WRITE,
        bookmarks: Any = (),
        fetch_size: Optional[int] = None,
        *,
        config: Optional[SessionConfig] = None,
        **kwargs: Any,
    ) -> Session:
        """Open a session

        Args:
            database (str, optional): Target database. Defaults to the
                configured ``default_database``, or the server default.
            default_access_mode (AccessMode, optional): Mode used for
                auto-commit statements and explicit transactions.
                Defaults to `AccessMode.WRITE`.
            bookmarks (Sequence[str], optional): Bookmarks the first unit of
                work must observe. Defaults to `()`.
            fetch_size (int, optional): Records pulled per batch.
            config (SessionConfig, optional): A complete session
                configuration, used instead of the other arguments.

        Returns:
            Session: A new session
        """
        self._check_open()
        if config is None:
            config = SessionConfig(
                database=database,
                default_access_mode=default_access_mode,
                bookmarks=bookmarks,
                fetch_size=fetch_size,
                **kwargs,
            )
        return Session(self, config)

    async def verify_connectivity(self) -> None:
        """Establish and validate one connection without lending it

        Raises:
            AuthenticationError: If the credentials are rejected
            ConnectivityError: If the server cannot be reached
        """
        self._check_open()
        await self._pool.verify_connectivity()

    async def verify_authentication(self, auth: Auth = None) -> bool:
        """Check whether the credentials are accepted by the server

        Args:
            auth (AuthToken, optional): Credentials to check instead of the
                driver's own. Defaults to `None`.

        Raises:
            ConnectivityError: If the server cannot be reached

        Returns:
            bool: False if the server rejected the credentials
        """
        self._check_open()
        token = _to_auth_token(auth) or self._auth
        connection = self._pool.connection_class(
            self._address, token, self._config
        )
        try:
            await connection.open()
        except AuthenticationError as e:
            logger.info("Authentication against %s failed: %s", self, e)
            return False
        finally:
            await connection.close()
        return True

    async def execute_query(
        self,
        query: str,
        parameters: Optional[Any] = None,
        *,
        database: Optional[str] = None,
        routing: AccessMode = AccessMode.WRITE,
        **kwparameters: Any,
    ) -> EagerResult:
        """Run one statement in a managed transaction and collect the records

        The statement is retried on transient failures like any other
        managed transaction.

        Returns:
            EagerResult: ``(records, summary, keys)``
        """
        params = merge_parameters(parameters, kwparameters)

        async def work(tx: ManagedTransaction) -> EagerResult:
            result = await tx.run(query, params)
            return await result.to_eager_result()

        async with self.session(database=database) as session:
            if routing is AccessMode.READ:
                return await session.execute_read(work)
            return await session.execute_write(work)

    async def close(self) -> None:
        """Close the driver, draining its connection pool"""
        if self._closed:
            return
        self._closed = True
        DriverRegistry.remove(self)
        await self._pool.close()
        logger.info("Driver for %s closed", self._address)

    async def __aenter__(self) -> Driver:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def driver(url: str, auth: Auth = None, **config: Any) -> Driver:
    """Create a driver that is not registered process-wide"""
    return Driver(url, auth, **config)


def init(url: str, auth: Auth = None, **config: Any) -> Driver:
    """Create the process-wide driver for ``url``

    Raises:
        DriverError: If a driver for the same address is already
            initialized. Call `shutdown` first.
    """
    instance = Driver(url, auth, **config)
    DriverRegistry.add(instance)
    logger.info("Initialized driver for %s", instance.address)
    return instance


def get_driver(url: Optional[str] = None) -> Driver:
    """Fetch the process-wide driver, by URL when more than one exists"""
    return DriverRegistry.get(parse_url(url).key if url else None)


async def shutdown() -> None:
    """Close every process-wide driver"""
    for instance in DriverRegistry():
        await instance.close()
