import asyncio

import pytest

from graphsession import (
    ConcurrentAccessError,
    ConnectivityError,
    ManagedTransaction,
    StatementError,
    TransactionError,
    TransactionKind,
    TransactionState,
)

from .conftest import COUNT_TO, CREATE_PERSON, MATCH_PEOPLE


@pytest.fixture
async def session(driver):
    session = driver.session()
    yield session
    await session.close()


async def test_commit_applies_statements_in_order(session, server, driver):
    tx = await session.begin_transaction()
    assert tx.kind is TransactionKind.EXPLICIT
    assert tx.is_open

    await tx.run(CREATE_PERSON, name="Alice")
    await tx.run(CREATE_PERSON, {"name": "Bob"})
    result = await tx.run(MATCH_PEOPLE)
    assert await result.values() == [["Alice"], ["Bob"]]
    assert server.people == []

    bookmark = await tx.commit()

    assert bookmark == "FB:bookmark-1"
    assert tx.bookmark == bookmark
    assert tx.state is TransactionState.COMMITTED
    assert server.people == ["Alice", "Bob"]
    assert [query for query, _ in server.queries] == [
        CREATE_PERSON,
        CREATE_PERSON,
        MATCH_PEOPLE,
    ]
    assert driver.pool.in_use == 0


async def test_committed_transaction_is_terminal(session):
    tx = await session.begin_transaction()
    await tx.commit()

    with pytest.raises(TransactionError):
        await tx.commit()
    with pytest.raises(TransactionError):
        await tx.rollback()
    with pytest.raises(TransactionError):
        await tx.run(MATCH_PEOPLE)


async def test_rollback_discards_and_is_idempotent(session, server):
    tx = await session.begin_transaction()
    await tx.run(CREATE_PERSON, name="Alice")

    await tx.rollback()
    await tx.rollback()
    await tx.close()

    assert tx.state is TransactionState.ROLLED_BACK
    assert server.people == []
    assert server.rollbacks == 1
    with pytest.raises(TransactionError):
        await tx.commit()


async def test_statement_error_fails_transaction(session, server, driver):
    tx = await session.begin_transaction()

    with pytest.raises(StatementError) as exc_info:
        await tx.run("CREATE nonsense", {"name": "Alice"})

    assert exc_info.value.query == "CREATE nonsense"
    assert exc_info.value.parameters == {"name": "Alice"}
    assert tx.state is TransactionState.FAILED
    assert driver.pool.in_use == 0

    with pytest.raises(TransactionError):
        await tx.commit()
    await tx.rollback()
    assert tx.state is TransactionState.FAILED


async def test_connectivity_loss_fails_transaction(session, server, driver):
    tx = await session.begin_transaction()
    connection = tx.connection
    server.run_errors.append(ConnectivityError("connection reset by peer"))

    with pytest.raises(ConnectivityError):
        await tx.run(MATCH_PEOPLE)

    assert tx.state is TransactionState.FAILED
    assert connection.broken
    assert connection.closed
    assert driver.pool.size == 0


async def test_rejected_commit_raises_with_cause(session, server):
    tx = await session.begin_transaction()
    await tx.run(CREATE_PERSON, name="Alice")
    rejected = StatementError(
        "Deadlock detected",
        code="Neo.TransientError.Transaction.DeadlockDetected",
    )
    server.commit_errors.append(rejected)

    with pytest.raises(TransactionError) as exc_info:
        await tx.commit()

    assert exc_info.value.__cause__ is rejected
    assert tx.state is TransactionState.FAILED
    assert server.people == []


async def test_concurrent_pull_leaves_transaction_open(session, server):
    tx = await session.begin_transaction()
    result = await tx.run(COUNT_TO, n=2)
    server.pull_gate = asyncio.Event()

    streaming = asyncio.create_task(result.fetch(2))
    await asyncio.sleep(0.01)

    with pytest.raises(ConcurrentAccessError):
        await tx.run(COUNT_TO, n=1)
    assert tx.is_open

    server.pull_gate.set()
    assert [record["i"] for record in await streaming] == [1, 2]
    assert await tx.commit() == "FB:bookmark-1"


async def test_context_manager_commits_on_success(session, server):
    async with await session.begin_transaction() as tx:
        await tx.run(CREATE_PERSON, name="Alice")

    assert tx.state is TransactionState.COMMITTED
    assert server.people == ["Alice"]


async def test_context_manager_rolls_back_on_error(session, server):
    with pytest.raises(ValueError):
        async with await session.begin_transaction() as tx:
            await tx.run(CREATE_PERSON, name="Alice")
            raise ValueError("boom")

    assert tx.state is TransactionState.ROLLED_BACK
    assert server.people == []


async def test_unconsumed_results_are_buffered_before_commit(session):
    tx = await session.begin_transaction()
    result = await tx.run(COUNT_TO, n=3)
    await tx.commit()

    assert [record["i"] async for record in result] == [1, 2, 3]


async def test_managed_transaction_only_runs(session, server):
    async def work(tx):
        assert isinstance(tx, ManagedTransaction)
        assert tx.kind is TransactionKind.MANAGED_WRITE
        assert tx.state is TransactionState.OPEN
        assert not hasattr(tx, "commit")
        assert not hasattr(tx, "rollback")
        result = await tx.run(CREATE_PERSON, name="Alice")
        return (await result.single())["name"]

    assert await session.execute_write(work) == "Alice"
    assert server.people == ["Alice"]


async def test_work_failure_rolls_back_managed_transaction(session, server):
    async def work(tx):
        await tx.run(CREATE_PERSON, name="Alice")
        raise ValueError("application failure")

    with pytest.raises(ValueError):
        await session.execute_write(work)

    assert server.people == []
    assert server.rollbacks == 1
