import asyncio
from collections import deque
from typing import Any, Dict, List, Optional

import pytest

from graphsession import (
    AuthenticationError,
    BaseConnection,
    ConnectionPool,
    Driver,
    DriverConfig,
    StatementError,
    basic,
    parse_url,
)
from graphsession.registry import DriverRegistry

CREATE_PERSON = "CREATE (p:Person {name: $name}) RETURN p.name AS name"
MATCH_PEOPLE = "MATCH (p:Person) RETURN p.name AS name ORDER BY name"
ECHO = "RETURN $value AS value"
COUNT_TO = "UNWIND range(1, $n) AS i RETURN i"


class FakeServer:
    """In-memory stand-in for a database server.

    Understands a handful of statements. Failures are scripted by pushing
    exceptions onto ``run_errors``, ``commit_errors`` or ``connect_error``.
    """

    def __init__(self):
        self.people: List[str] = []
        self.queries: List[tuple] = []
        self.begun: List[Dict[str, Any]] = []
        self.pulls: List[int] = []
        self.run_errors: deque = deque()
        self.commit_errors: deque = deque()
        self.connect_error: Optional[BaseException] = None
        self.accepted_auth = None
        self.run_gate: Optional[asyncio.Event] = None
        self.pull_gate: Optional[asyncio.Event] = None
        self.connections: List["FakeConnection"] = []
        self.opened = 0
        self.resets = 0
        self.closed = 0
        self.commits = 0
        self.rollbacks = 0
        self._bookmark = 0

    def next_bookmark(self) -> str:
        self._bookmark += 1
        return f"FB:bookmark-{self._bookmark}"

    def execute(self, query, parameters, writes):
        if query == CREATE_PERSON:
            writes.append(parameters["name"])
            return ["name"], [[parameters["name"]]], {"nodes_created": 1}
        if query == MATCH_PEOPLE:
            names = sorted(self.people + writes)
            return ["name"], [[name] for name in names], {}
        if query == ECHO:
            return ["value"], [[parameters["value"]]], {}
        if query == COUNT_TO:
            return ["i"], [[i] for i in range(1, parameters["n"] + 1)], {}
        raise StatementError(
            f"Invalid input: {query}",
            code="Neo.ClientError.Statement.SyntaxError",
        )


class FakeConnection(BaseConnection):
    server: FakeServer

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.server.connections.append(self)
        self.pending: Optional[List[str]] = None
        self.rows: deque = deque()
        self.counters: Dict[str, int] = {}
        self.auto_bookmark: Optional[str] = None

    async def _connect(self):
        if self.server.connect_error is not None:
            raise self.server.connect_error
        accepted = self.server.accepted_auth
        if accepted is not None and self.auth != accepted:
            raise AuthenticationError(
                "The client is unauthorized due to authentication failure"
            )
        self.server.opened += 1

    async def _begin(self, database, mode, bookmarks, metadata, timeout):
        self.server.begun.append(
            {
                "database": database,
                "mode": mode,
                "bookmarks": tuple(bookmarks),
                "metadata": dict(metadata),
                "timeout": timeout,
            }
        )
        self.pending = []

    async def _run(
        self, query, parameters, database, mode, bookmarks, metadata, timeout
    ):
        self.server.queries.append((query, dict(parameters)))
        if self.server.run_gate is not None:
            await self.server.run_gate.wait()
        if self.server.run_errors:
            raise self.server.run_errors.popleft()
        auto = self.pending is None
        writes: List[str] = [] if auto else self.pending
        keys, rows, self.counters = self.server.execute(
            query, parameters, writes
        )
        self.auto_bookmark = None
        if auto:
            self.server.people.extend(writes)
            self.auto_bookmark = self.server.next_bookmark()
        self.rows = deque(rows)
        return keys

    async def _pull(self, n):
        if self.server.pull_gate is not None:
            await self.server.pull_gate.wait()
        if n < 0:
            n = len(self.rows)
        batch = [self.rows.popleft() for _ in range(min(n, len(self.rows)))]
        self.server.pulls.append(len(batch))
        return batch, bool(self.rows)

    async def _summary(self):
        data = {"database": "neo4j", "counters": dict(self.counters)}
        if self.auto_bookmark:
            data["bookmark"] = self.auto_bookmark
        return data

    async def _commit(self):
        if self.server.commit_errors:
            raise self.server.commit_errors.popleft()
        self.server.people.extend(self.pending or [])
        self.pending = None
        self.server.commits += 1
        return self.server.next_bookmark()

    async def _rollback(self):
        self.pending = None
        self.server.rollbacks += 1

    async def _reset(self):
        self.pending = None
        self.rows.clear()
        self.server.resets += 1

    async def _close(self):
        self.server.closed += 1


@pytest.fixture(autouse=True)
def reset_registry():
    DriverRegistry.reset()


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def connection_class(server):
    return type("ScriptedConnection", (FakeConnection,), {"server": server})


@pytest.fixture
def make_pool(connection_class):
    def _make(**config):
        return ConnectionPool(
            parse_url("bolt://localhost:7687"),
            basic("neo4j", "password"),
            DriverConfig(**config),
            connection_class,
        )

    return _make


@pytest.fixture
async def make_driver(connection_class):
    drivers = []

    def _make(
        url="bolt://localhost:7687", auth=("neo4j", "password"), **config
    ):
        config.setdefault("connection_class", connection_class)
        config.setdefault("retry_initial_delay", 0)
        instance = Driver(url, auth, **config)
        drivers.append(instance)
        return instance

    yield _make

    for instance in drivers:
        await instance.close()


@pytest.fixture
def driver(make_driver):
    return make_driver()
