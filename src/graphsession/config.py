from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Type

from graphsession.exception import ConfigurationError


class AccessMode(Enum):
    """Access mode a unit of work is routed with"""

    READ = "r"
    WRITE = "w"


def _positive(name: str, value: Any, allow_zero: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name}: must be a number")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigurationError(
            f"{name}: must be {'non-negative' if allow_zero else 'positive'}"
        )


@dataclass(frozen=True)
class DriverConfig:
    max_connection_pool_size: int = 100
    connection_acquisition_timeout: float = 60.0
    connection_timeout: float = 30.0
    max_transaction_retry_attempts: int = 5
    retry_initial_delay: float = 1.0
    retry_multiplier: float = 2.0
    retry_jitter: float = 0.2
    retry_max_delay: float = 30.0
    fetch_size: int = 1000
    default_database: Optional[str] = None
    user_agent: Optional[str] = None
    connection_class: Optional[Type[Any]] = None

    def __post_init__(self) -> None:
        if (
            not isinstance(self.max_connection_pool_size, int)
            or self.max_connection_pool_size < 1
        ):
            raise ConfigurationError(
                "max_connection_pool_size: must be an integer of at least 1"
            )
        if (
            not isinstance(self.max_transaction_retry_attempts, int)
            or self.max_transaction_retry_attempts < 1
        ):
            raise ConfigurationError(
                "max_transaction_retry_attempts: must be an integer of at "
                "least 1"
            )
        if self.fetch_size != -1 and (
            not isinstance(self.fetch_size, int) or self.fetch_size < 1
        ):
            raise ConfigurationError(
                "fetch_size: must be a positive integer or -1 for all"
            )
        _positive(
            "connection_acquisition_timeout",
            self.connection_acquisition_timeout,
        )
        _positive("connection_timeout", self.connection_timeout)
        _positive("retry_initial_delay", self.retry_initial_delay, True)
        _positive("retry_max_delay", self.retry_max_delay, True)
        _positive("retry_jitter", self.retry_jitter, True)
        if self.retry_jitter > 1:
            raise ConfigurationError("retry_jitter: must be between 0 and 1")
        _positive("retry_multiplier", self.retry_multiplier)
        if self.retry_multiplier < 1:
            raise ConfigurationError("retry_multiplier: must be at least 1")

    @classmethod
    def from_kwargs(cls, **kwargs: Any) -> DriverConfig:
        """Build a config, rejecting unknown keyword arguments"""
        known = {f.name for f in fields(cls)}
        unknown = set(kwargs) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown driver configuration: {', '.join(sorted(unknown))}"
            )
        return cls(**kwargs)


@dataclass(frozen=True)
class SessionConfig:
    """Session settings, fixed when the session is opened"""

    database: Optional[str] = None
    default_access_mode: AccessMode = AccessMode.WRITE
    bookmarks: Tuple[str, ...] = ()
    fetch_size: Optional[int] = None
    transaction_metadata: Mapping[str, Any] = field(
        default_factory=dict, hash=False
    )
    transaction_timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.database is not None and (
            not isinstance(self.database, str) or not self.database
        ):
            raise ConfigurationError(
                "database: must be a string at least 1 character long"
            )
        if not isinstance(self.default_access_mode, AccessMode):
            try:
                mode = AccessMode(self.default_access_mode)
            except ValueError as e:
                raise ConfigurationError(
                    "default_access_mode: must be AccessMode.READ or "
                    "AccessMode.WRITE"
                ) from e
            object.__setattr__(self, "default_access_mode", mode)
        if isinstance(self.bookmarks, str):
            object.__setattr__(self, "bookmarks", (self.bookmarks,))
        else:
            object.__setattr__(self, "bookmarks", tuple(self.bookmarks))
        object.__setattr__(
            self,
            "transaction_metadata",
            MappingProxyType(dict(self.transaction_metadata or {})),
        )
        if self.fetch_size is not None and self.fetch_size != -1:
            if not isinstance(self.fetch_size, int) or self.fetch_size < 1:
                raise ConfigurationError(
                    "fetch_size: must be a positive integer or -1 for all"
                )
        if self.transaction_timeout is not None:
            _positive("transaction_timeout", self.transaction_timeout)

    def with_defaults(self, driver_config: DriverConfig) -> SessionConfig:
        """Fill unset values from the driver configuration"""
        changes: Dict[str, Any] = {}
        if self.database is None and driver_config.default_database:
            changes["database"] = driver_config.default_database
        if self.fetch_size is None:
            changes["fetch_size"] = driver_config.fetch_size
        return replace(self, **changes) if changes else self
