from __future__ import annotations

import logging
from collections import deque, namedtuple
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
)

from graphsession.exception import ConcurrentAccessError, GraphSessionError

if TYPE_CHECKING:
    from graphsession.connection.base import BaseConnection

logger = logging.getLogger(__name__)

EagerResult = namedtuple("EagerResult", ("records", "summary", "keys"))


class Record(Mapping):
    """One result row: an ordered mapping of return alias to value"""

    __slots__ = ("_keys", "_values")

    def __init__(self, keys: Sequence[str], values: Sequence[Any]) -> None:
        if len(keys) != len(values):
            raise GraphSessionError(
                f"Record has {len(values)} values for {len(keys)} keys"
            )
        self._keys = tuple(keys)
        self._values = tuple(values)

    def __getitem__(self, key: Any) -> Any:
        if isinstance(key, int):
            return self._values[key]
        try:
            return self._values[self._keys.index(key)]
        except ValueError:
            raise KeyError(key) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __repr__(self) -> str:
        fields = " ".join(
            f"{key}={value!r}" for key, value in zip(self._keys, self._values)
        )
        return f"<Record {fields}>"

    def data(self, *keys: str) -> Dict[str, Any]:
        """Return the record as a dict, optionally limited to ``keys``"""
        if not keys:
            return dict(zip(self._keys, self._values))
        return {key: self[key] for key in keys}

    def value(self, key: Any = 0, default: Any = None) -> Any:
        try:
            return self[key]
        except (KeyError, IndexError):
            return default


@dataclass
class ResultSummary:
    query: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    database: Optional[str] = None
    counters: Dict[str, int] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def contains_updates(self) -> bool:
        return any(
            value
            for key, value in self.counters.items()
            if key != "system_updates"
        )


class Result:
    """Records streamed back from one statement.

    Records are pulled from the connection in batches of ``fetch_size`` as
    the result is iterated. Once the stream is exhausted (or consumed) the
    owner is notified so that it can release the connection.
    """

    def __init__(
        self,
        connection: BaseConnection,
        keys: Sequence[str],
        query: str,
        parameters: Dict[str, Any],
        fetch_size: int = -1,
        on_done: Optional[
            Callable[[Optional[BaseException]], Awaitable[None]]
        ] = None,
    ) -> None:
        self._connection: Optional[BaseConnection] = connection
        self._keys = list(keys)
        self._query = query
        self._parameters = parameters
        self._fetch_size = fetch_size
        self._on_done = on_done
        self._buffer: Deque[Record] = deque()
        self._has_more = True
        self._done = False
        self._summary: Optional[ResultSummary] = None

    def keys(self) -> List[str]:
        return list(self._keys)

    @property
    def attached(self) -> bool:
        """Whether records are still to be pulled from the connection"""
        return not self._done

    def __aiter__(self) -> Result:
        return self

    async def __anext__(self) -> Record:
        if not self._buffer and self._has_more and not self._done:
            await self._pull(self._fetch_size)
        if self._buffer:
            return self._buffer.popleft()
        await self._complete()
        raise StopAsyncIteration

    async def _pull(self, n: int) -> None:
        if self._connection is None:
            raise GraphSessionError(
                "Result is no longer attached to a connection",
                query=self._query,
                parameters=self._parameters,
            )
        try:
            rows, self._has_more = await self._connection.pull(n)
        except ConcurrentAccessError:
            raise
        except Exception as e:
            self._has_more = False
            await self._complete(e)
            raise
        self._buffer.extend(Record(self._keys, row) for row in rows)

    async def _complete(self, error: Optional[BaseException] = None) -> None:
        if self._done:
            return
        self._done = True
        summary_error: Optional[GraphSessionError] = None
        if error is None and self._connection is not None:
            try:
                metadata = dict(await self._connection.summary())
            except GraphSessionError as e:
                summary_error = e
            else:
                self._summary = ResultSummary(
                    query=self._query,
                    parameters=self._parameters,
                    database=metadata.pop("database", None),
                    counters=metadata.pop("counters", {}),
                    metadata=metadata,
                )
        self._connection = None
        if self._on_done is not None:
            await self._on_done(error or summary_error)
        if summary_error is not None:
            raise summary_error

    def _detach(self) -> None:
        """Stop streaming without notifying the owner"""
        self._done = True
        self._has_more = False
        self._connection = None

    async def _buffer_all(self) -> None:
        """Pull every remaining record into memory and detach"""
        while self._has_more and not self._done:
            await self._pull(-1)
        await self._complete()

    async def fetch(self, n: int) -> List[Record]:
        """Return up to ``n`` records"""
        records: List[Record] = []
        while len(records) < n:
            try:
                records.append(await self.__anext__())
            except StopAsyncIteration:
                break
        return records

    async def single(self, strict: bool = False) -> Optional[Record]:
        """Return the only record of the result

        Args:
            strict (bool, optional): Raise instead of returning ``None`` for
                an empty result or the first record when there are more.
                Defaults to `False`.
        """
        records = [record async for record in self]
        if not records:
            if strict:
                raise GraphSessionError(
                    "Expected exactly one record, found none",
                    query=self._query,
                    parameters=self._parameters,
                )
            return None
        if len(records) > 1:
            if strict:
                raise GraphSessionError(
                    f"Expected exactly one record, found {len(records)}",
                    query=self._query,
                    parameters=self._parameters,
                )
            logger.warning(
                "Expected a result with a single record, "
                "but found %d; returning the first",
                len(records),
            )
        return records[0]

    async def data(self, *keys: str) -> List[Dict[str, Any]]:
        return [record.data(*keys) async for record in self]

    async def values(self, *keys: str) -> List[List[Any]]:
        if not keys:
            return [list(record.values()) async for record in self]
        return [[record[key] for key in keys] async for record in self]

    async def consume(self) -> ResultSummary:
        """Discard the remaining records and return the summary"""
        await self._buffer_all()
        self._buffer.clear()
        if self._summary is None:
            self._summary = ResultSummary(
                query=self._query, parameters=self._parameters
            )
        return self._summary

    async def to_eager_result(self) -> EagerResult:
        records = [record async for record in self]
        summary = await self.consume()
        return EagerResult(records, summary, self.keys())
