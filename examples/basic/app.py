import asyncio
from dataclasses import dataclass
from typing import List

import graphsession
from graphsession import basic


@dataclass
class Person:
    name: str


async def create_person(tx, name: str) -> Person:
    result = await tx.run(
        "CREATE (p:Person {name: $name}) RETURN p.name AS name", name=name
    )
    record = await result.single(strict=True)
    return Person(**record.data())


async def find_people(tx) -> List[Person]:
    result = await tx.run("MATCH (p:Person) RETURN p.name AS name")
    return [Person(**record.data()) async for record in result]


async def run():
    driver = graphsession.init(
        "neo4j://localhost:7687", auth=basic("neo4j", "password")
    )
    await driver.verify_connectivity()

    async with driver.session(database="neo4j") as session:
        print(await session.execute_write(create_person, "Alice"))
        print(await session.execute_read(find_people))

    await graphsession.shutdown()


asyncio.run(run())
