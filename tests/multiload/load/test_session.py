from datetime import timedelta

import pytest
from attrs.exceptions import FrozenInstanceError
from duckdb import DuckDBPyConnection

from multiload.core import default_chunk_size, default_fetch_batch_size
from multiload.core.database import DuckdbManager
from multiload.load.binding import ParameterBindings
from multiload.load.config import LoaderConfig
from multiload.load.context import AggregateResult, ExecutionContext, LoadSession, LoadStatistics


def test_loader_config() -> None:
    config = LoaderConfig()
    assert config.chunk_size == default_chunk_size
    assert config.fetch_batch_size == default_fetch_batch_size
    assert config.default_timeout is None

    assert LoaderConfig(default_timeout=1.5).default_timeout == timedelta(seconds=1.5)
    assert LoaderConfig(default_timeout=timedelta(minutes=1)).to_dict() == {
        'chunk_size': default_chunk_size,
        'fetch_batch_size': default_fetch_batch_size,
        'statement_cache_size': 32,
        'default_timeout': 60.0,
    }
    assert LoaderConfig(chunk_size=8).to_dict()['default_timeout'] is None

    with pytest.raises(ValueError, match='chunk_size'):
        LoaderConfig(chunk_size=0)
    with pytest.raises(ValueError, match='fetch_batch_size'):
        LoaderConfig(fetch_batch_size=0)
    with pytest.raises(TypeError, match='Expected a timedelta'):
        LoaderConfig(default_timeout='soon') # type: ignore[arg-type]
    with pytest.raises(FrozenInstanceError):
        config.chunk_size = 2 # type: ignore[misc]


def test_aggregate_result() -> None:
    results = AggregateResult()
    assert results.merge(1, (1, 'a'))
    assert results.merge(2, (2, 'b'))
    assert not results.merge(1, (1, 'other'))
    assert len(results) == 2
    assert 1 in results and 3 not in results
    assert results.get(1) == (1, 'a'), 'The first row merged for a key is kept'
    assert results.keys() == [1, 2]
    assert results.rows() == [(1, 'a'), (2, 'b')]
    assert dict(results.items()) == {1: (1, 'a'), 2: (2, 'b')}


def test_session_identity_map(session: LoadSession) -> None:
    source = ('items', ('id', 'name'))
    other_source = ('items', ('id',))

    assert session.get_cached(source, 1) is None
    session.register(source, 1, (1, 'a'))
    session.register(source, 1, (1, 'replaced'))
    assert session.get_cached(source, 1) == (1, 'a'), 'An already registered row is kept'
    assert session.is_cached(source, 1)
    assert not session.is_cached(other_source, 1), 'Rows with different columns are distinct'
    assert session.cached_row_count == 1

    session.evict(source, 1)
    session.evict(source, 1)
    assert not session.is_cached(source, 1)

    session.register(source, 2, (2, 'b'))
    session.clear()
    assert session.cached_row_count == 0


def test_session_lifecycle(ddb_manager: DuckdbManager) -> None:
    config = LoaderConfig(chunk_size=3, statement_cache_size=5)
    with LoadSession.open(ddb_manager, config) as session:
        assert session.config == config
        assert session.statement_cache.maxsize == 5
        assert not session.closed

        with session.fork() as forked:
            assert forked.conn is not session.conn
            assert forked.config is session.config
            assert forked.statement_cache is session.statement_cache
            assert forked.statistics is session.statistics
            forked.register('src', 1, (1,))
            assert not session.is_cached('src', 1), 'Forked sessions have their own identity map'
        assert forked.closed
        assert session.conn.sql('SELECT 1').fetchall() == [(1,)], 'Closing a fork leaves the parent open'

        context = ExecutionContext(session, ParameterBindings(1), AggregateResult())
        assert context.connection is session.conn
        assert context.fetch_batch_size == default_fetch_batch_size and context.timeout is None

    assert session.closed
    session.close() # Idempotent
    with pytest.raises(ValueError, match='Session is closed'):
        _ = context.connection


def test_session_on_borrowed_connection(conn: DuckDBPyConnection) -> None:
    with LoadSession(conn, owns_connection=False):
        pass
    assert conn.sql('SELECT 1').fetchall() == [(1,)], 'A borrowed connection is not closed'


def test_statistics_snapshot() -> None:
    statistics = LoadStatistics()
    statistics.fetches.inc_and_get(2)
    statistics.rows_fetched.inc_and_get(10)
    snapshot = statistics.snapshot()
    assert snapshot['fetches'] == 2 and snapshot['rows_fetched'] == 10
    assert set(snapshot) == {'chunks_started', 'chunks_skipped', 'fetches', 'rows_fetched', 'duplicate_rows',
                             'statement_cache_hits', 'statement_cache_misses'}
    assert all(value == 0 for key, value in snapshot.items() if key not in ('fetches', 'rows_fetched'))
