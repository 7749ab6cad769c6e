import contextlib
import threading
from collections.abc import Iterator
from datetime import timedelta
from typing import Any

import duckdb
from duckdb import DuckDBPyConnection


def read_results(conn: DuckDBPyConnection, batch_size: int = 100) -> list[tuple[Any, ...]]:
    result: list[tuple[Any, ...]] = []
    while True:
        more = conn.fetchmany(batch_size)
        if not more:
            return result
        result.extend(more)


@contextlib.contextmanager
def interrupt_after(conn: DuckDBPyConnection, timeout: timedelta | None) -> Iterator[DuckDBPyConnection]:
    """Interrupt the query running on this connection if the scope doesn't finish within the timeout.

    An interrupted query raises duckdb.InterruptException inside the scope; it is translated into a TimeoutError.
    With timeout=None this does nothing.
    """
    if timeout is None:
        yield conn
        return

    expired = threading.Event()

    def interrupt() -> None:
        expired.set()
        conn.interrupt()

    timer = threading.Timer(timeout.total_seconds(), interrupt)
    timer.daemon = True
    timer.start()
    try:
        yield conn
    except duckdb.InterruptException as e:
        if expired.is_set():
            raise TimeoutError(f'Query did not complete within {timeout}') from e
        raise
    finally:
        timer.cancel()
