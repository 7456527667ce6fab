"""
Database module.
Contains the item store contract, the database connection, models, and store implementations.
"""

from prodline.db.connection import (
    close_db,
    create_schema,
    create_session_factory,
    get_engine,
    get_session_context,
    init_db,
)
from prodline.db.contracts import ItemStore
from prodline.db.memory import InMemoryItemStore
from prodline.db.models import Base, QueueItem
from prodline.db.store import SqlItemStore

__all__ = [
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "create_schema",
    "create_session_factory",
    "ItemStore",
    "InMemoryItemStore",
    "SqlItemStore",
    "QueueItem",
    "Base",
]
