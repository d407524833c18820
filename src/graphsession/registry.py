from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterator, Optional

from graphsession.exception import DriverError

if TYPE_CHECKING:
    from graphsession.driver import Driver


class DriverRegistry:
    """
    Process-wide registry of drivers, keyed by target address. There is
    at most one registered driver per address.
    """

    _singleton = None
    _drivers: Dict[str, Driver]

    def __new__(cls, *args, **kwargs):
        if cls._singleton is None:
            cls.reset()
        return cls._singleton

    @classmethod
    def add(cls, driver: Driver) -> None:
        instance = cls()
        key = driver.address.key
        if key in instance._drivers:
            raise DriverError(
                f"A driver for {driver.address} is already initialized. "
                "Call shutdown() before initializing it again."
            )
        instance._drivers[key] = driver

    @classmethod
    def remove(cls, driver: Driver) -> None:
        instance = cls()
        key = driver.address.key
        if instance._drivers.get(key) is driver:
            del instance._drivers[key]

    @classmethod
    def get(cls, key: Optional[str] = None) -> Driver:
        instance = cls()
        if key is None:
            if len(instance._drivers) != 1:
                raise DriverError(
                    "Expected exactly one initialized driver, found "
                    f"{len(instance._drivers)}. Pass the URL explicitly."
                )
            return next(iter(instance._drivers.values()))
        try:
            return instance._drivers[key]
        except KeyError as e:
            raise DriverError(f"No driver initialized for {key}") from e

    def __iter__(self) -> Iterator[Driver]:
        return iter(list(self._drivers.values()))

    def __len__(self) -> int:
        return len(self._drivers)

    @classmethod
    def reset(cls):
        cls._singleton = super().__new__(cls)
        cls._singleton._drivers = {}
