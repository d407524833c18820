from importlib.metadata import version

from .address import ServerAddress, parse_url
from .auth import AuthToken, basic, bearer, custom, kerberos
from .config import AccessMode, DriverConfig, SessionConfig
from .connection import BaseConnection, ConnectionState, Neo4jConnection
from .driver import Driver, driver, get_driver, init, shutdown
from .exception import (
    AuthenticationError,
    ConcurrentAccessError,
    ConfigurationError,
    ConnectivityError,
    DriverError,
    GraphSessionError,
    PoolExhausted,
    SessionClosed,
    StatementError,
    TransactionError,
)
from .pool import ConnectionPool, PoolStatistics
from .result import EagerResult, Record, Result, ResultSummary
from .retry import RetryPolicy
from .session import Session
from .transaction import (
    ManagedTransaction,
    Transaction,
    TransactionKind,
    TransactionState,
)

__version__ = version("graphsession")

READ_ACCESS = AccessMode.READ
WRITE_ACCESS = AccessMode.WRITE

__all__ = (
    "basic",
    "bearer",
    "custom",
    "driver",
    "get_driver",
    "init",
    "kerberos",
    "parse_url",
    "shutdown",
    "AccessMode",
    "AuthToken",
    "AuthenticationError",
    "BaseConnection",
    "ConcurrentAccessError",
    "ConfigurationError",
    "ConnectionPool",
    "ConnectionState",
    "ConnectivityError",
    "Driver",
    "DriverConfig",
    "DriverError",
    "EagerResult",
    "GraphSessionError",
    "ManagedTransaction",
    "Neo4jConnection",
    "PoolExhausted",
    "PoolStatistics",
    "READ_ACCESS",
    "Record",
    "Result",
    "ResultSummary",
    "RetryPolicy",
    "ServerAddress",
    "Session",
    "SessionClosed",
    "SessionConfig",
    "StatementError",
    "Transaction",
    "TransactionError",
    "TransactionKind",
    "TransactionState",
    "WRITE_ACCESS",
)
