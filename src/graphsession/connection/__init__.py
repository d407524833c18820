from .base import BaseConnection, ConnectionState
from .neo4j import Neo4jConnection

__all__ = (
    "BaseConnection",
    "ConnectionState",
    "Neo4jConnection",
)
