import threading
import time
from datetime import timedelta

import pytest
from duckdb import DuckDBPyConnection

from multiload.util.atomic import AtomicInt
from multiload.util.duckdbutil import interrupt_after, read_results


def test_read_results(conn: DuckDBPyConnection) -> None:
    conn.execute('SELECT i FROM range(25) t(i)')
    assert read_results(conn, 10) == [(i,) for i in range(25)]

    conn.execute('SELECT i FROM range(0) t(i)')
    assert read_results(conn, 10) == []


def test_interrupt_after_no_timeout(conn: DuckDBPyConnection) -> None:
    with interrupt_after(conn, None):
        conn.execute('SELECT 42')
        assert conn.fetchall() == [(42,)]


def test_interrupt_after_completes_in_time(conn: DuckDBPyConnection) -> None:
    with interrupt_after(conn, timedelta(seconds=30)):
        conn.execute('SELECT 42')
        assert conn.fetchall() == [(42,)]
    # The timer was cancelled; the connection is still usable afterwards
    time.sleep(0.1)
    assert conn.sql('SELECT 1').fetchall() == [(1,)]


def test_interrupt_after_times_out(conn: DuckDBPyConnection) -> None:
    slow_query = 'SELECT count(*) FROM range(10000000000) a(i), range(10) b(j) WHERE a.i * b.j = -1'
    with pytest.raises(TimeoutError, match='did not complete'), interrupt_after(conn, timedelta(milliseconds=200)):
        conn.execute(slow_query)

    assert conn.sql('SELECT 1').fetchall() == [(1,)], 'Connection usable after the interrupt'


def test_atomic_int() -> None:
    counter = AtomicInt()
    assert counter.inc_and_get() == 1
    assert counter.inc_and_get(5) == 6
    assert counter.get() == 6
    assert repr(counter) == 'AtomicInt(6)'

    def run() -> None:
        for _ in range(1000):
            counter.inc_and_get()

    threads = [threading.Thread(target=run) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert counter.get() == 4006
