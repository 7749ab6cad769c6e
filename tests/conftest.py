"""Configuration for pytest.

This file contains fixtures and configurations used by pytest.
"""
import contextlib
import logging
from collections.abc import Iterator

import pytest
from duckdb import DuckDBPyConnection

from multiload.core.database import DuckdbManager, DuckdbTable
from multiload.load.config import LoaderConfig
from multiload.load.context import LoadSession


@pytest.fixture(scope="session", autouse=True)
def configure_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@pytest.fixture
def ddb_manager() -> Iterator[DuckdbManager]:
    """Provide a DuckdbManager connected to an in-memory database."""
    with contextlib.closing(DuckdbManager.in_memory()) as ddb_manager:
        yield ddb_manager


@pytest.fixture
def conn(ddb_manager: DuckdbManager) -> Iterator[DuckDBPyConnection]:
    """Provide an in-memory DuckDB connection."""
    with ddb_manager.cursor() as conn:
        yield conn


@pytest.fixture
def items(conn: DuckDBPyConnection) -> DuckdbTable:
    """A table of 10 items with ids 1..10, named 'item<id>'."""
    conn.execute('CREATE TABLE items (id INTEGER, name VARCHAR, price DOUBLE)')
    conn.execute("INSERT INTO items SELECT i, 'item' || i::VARCHAR, i * 1.5 FROM range(1, 11) t(i)")
    return DuckdbTable.from_duckdb('items', conn)


@pytest.fixture
def session(ddb_manager: DuckdbManager) -> Iterator[LoadSession]:
    """A load session on its own cursor, with a small chunk size."""
    with LoadSession.open(ddb_manager, LoaderConfig(chunk_size=4)) as session:
        yield session
