"""Sessions, per-fetch execution contexts, and the results they accumulate."""

from __future__ import annotations

from collections.abc import Hashable, Iterator
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Self

from attrs import define, field, frozen
from duckdb import DuckDBPyConnection

from multiload.core import default_fetch_batch_size
from multiload.core.database import DuckdbManager
from multiload.load.binding import ParameterBindings
from multiload.load.config import LoaderConfig
from multiload.util.atomic import AtomicInt
from multiload.util.lrucache import LRUCache

if TYPE_CHECKING:
    from multiload.load.select import InPredicateSelect, StatementKey


type Row = tuple[Any, ...]


@frozen
class LoadStatistics:
    """Counters shared by a session and the sessions forked from it."""
    chunks_started: AtomicInt = field(factory=AtomicInt)
    chunks_skipped: AtomicInt = field(factory=AtomicInt)
    fetches: AtomicInt = field(factory=AtomicInt)
    rows_fetched: AtomicInt = field(factory=AtomicInt)
    duplicate_rows: AtomicInt = field(factory=AtomicInt)
    statement_cache_hits: AtomicInt = field(factory=AtomicInt)
    statement_cache_misses: AtomicInt = field(factory=AtomicInt)

    def snapshot(self) -> dict[str, int]:
        return {
            'chunks_started': self.chunks_started.get(),
            'chunks_skipped': self.chunks_skipped.get(),
            'fetches': self.fetches.get(),
            'rows_fetched': self.rows_fetched.get(),
            'duplicate_rows': self.duplicate_rows.get(),
            'statement_cache_hits': self.statement_cache_hits.get(),
            'statement_cache_misses': self.statement_cache_misses.get(),
        }


@define(eq=False)
class AggregateResult:
    """Rows merged from all the fetches of one load, by row key, in the order they were first seen.

    Merging a row whose key is already present keeps the existing row.
    """
    _rows: dict[Hashable, Row] = field(init=False, factory=dict)

    def merge(self, key: Hashable, row: Row) -> bool:
        """Add a row. Returns False if a row with this key was already merged."""
        if key in self._rows:
            return False
        self._rows[key] = row
        return True

    def get(self, key: Hashable) -> Row | None:
        return self._rows.get(key)

    def rows(self) -> list[Row]:
        return list(self._rows.values())

    def keys(self) -> list[Hashable]:
        return list(self._rows)

    def items(self) -> Iterator[tuple[Hashable, Row]]:
        return iter(self._rows.items())

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, key: object) -> bool:
        return key in self._rows


class LoadSession:
    """A unit of work for loading: one duckdb cursor, and an identity map of the rows loaded through it.

    Not threadsafe, like the cursor it owns. To load on another thread, fork() a new session;
    forked sessions share the statement cache and statistics, but not the identity map.
    """

    def __init__(self, conn: DuckDBPyConnection, config: LoaderConfig = LoaderConfig(),
                 statement_cache: LRUCache[StatementKey, InPredicateSelect] | None = None,
                 statistics: LoadStatistics | None = None,
                 owns_connection: bool = True):
        self.conn = conn
        self.config = config
        self.statement_cache: LRUCache[StatementKey, InPredicateSelect] = \
            statement_cache if statement_cache is not None else LRUCache(config.statement_cache_size)
        self.statistics = statistics if statistics is not None else LoadStatistics()
        self._identity_map: dict[tuple[Hashable, Hashable], Row] = {}
        self._owns_connection = owns_connection
        self._closed = False

    @staticmethod
    def open(ddb_manager: DuckdbManager, config: LoaderConfig = LoaderConfig()) -> LoadSession:
        """Open a session on a new cursor, which is closed with the session."""
        return LoadSession(ddb_manager.cursor(), config)

    def fork(self) -> LoadSession:
        """A new session on a new cursor of the same database, for use on another thread."""
        return LoadSession(self.conn.cursor(), self.config, self.statement_cache, self.statistics)

    def get_cached(self, source: Hashable, key: Hashable) -> Row | None:
        return self._identity_map.get((source, key))

    def is_cached(self, source: Hashable, key: Hashable) -> bool:
        return (source, key) in self._identity_map

    def register(self, source: Hashable, key: Hashable, row: Row) -> None:
        """Remember a loaded row. An already registered row is kept.

        The source identifies where the row came from and what its columns are; see MultiKeyLoader.source.
        """
        self._identity_map.setdefault((source, key), row)

    def evict(self, source: Hashable, key: Hashable) -> None:
        self._identity_map.pop((source, key), None)

    def clear(self) -> None:
        self._identity_map.clear()

    @property
    def cached_row_count(self) -> int:
        return len(self._identity_map)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._identity_map.clear()
        if self._owns_connection:
            self.conn.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *_args: object) -> None:
        self.close()


@frozen(eq=False, hash=False)
class ExecutionContext:
    """Everything one bulk fetch needs besides the statement: where to run it, what is bound, and where rows go."""
    session: LoadSession
    bindings: ParameterBindings
    results: AggregateResult
    fetch_batch_size: int = default_fetch_batch_size
    timeout: timedelta | None = None

    @property
    def connection(self) -> DuckDBPyConnection:
        if self.session.closed:
            raise ValueError('Session is closed')
        return self.session.conn
