"""Loading many rows of a table by key, in chunks, through a session."""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from collections.abc import Hashable, Sequence
from datetime import timedelta
from typing import Any

from attrs import field, frozen
from duckdb import DuckDBPyConnection

from multiload.core.database import DuckdbName, DuckdbTable
from multiload.core import types
from multiload.core.dataset import Dataset
from multiload.core.schema import Schema
from multiload.load.binding import ParameterBindings, Padding, is_absent
from multiload.load.chunker import MultiKeyLoadChunker
from multiload.load.context import AggregateResult, ExecutionContext, LoadSession, Row
from multiload.load.select import InPredicateSelect, SelectExecutor, UniqueSemantic, cached_statement

_logger = logging.getLogger(__name__)


def _key_cols_converter(key_cols: str | Sequence[str]) -> tuple[str, ...]:
    return (key_cols,) if isinstance(key_cols, str) else tuple(key_cols)

def _select_cols_converter(select_cols: Sequence[str] | None) -> tuple[str, ...] | None:
    return None if select_cols is None else tuple(select_cols)


def covering_budget(keys: Sequence[Hashable | None]) -> int:
    """The non-null element count to pass to the chunker for a sparse key array.

    The chunker stops after enough chunks to cover this many positions, so with None values before the last real key,
    the count of real keys would leave trailing keys unloaded. The position after the last real key is the smallest
    bound that covers them all.
    """
    for position in range(len(keys) - 1, -1, -1):
        if keys[position] is not None:
            return position + 1
    return 0


def _normalize_part(dtype: types.Dtype, part: Any) -> Any:
    if part is not None and dtype == types.uuid_dtype:
        return str(uuid.UUID(str(part)))
    return part


@frozen
class MultiKeyLoadOptions:
    """Options for a single load.

    Args:
        ordered_return: if True, the result has one row per input key, in input order, with nulls
                        in the value columns for keys that were not found (and an all-null row for a None key).
                        If False, the result has each distinct row found once, in no particular order.
        session_checking: if True, keys whose rows the session already holds are not fetched again.
        chunk_size: number of keys per fetch; None means the session config's chunk size.
        timeout: timeout for each fetch; None means the session config's default timeout.
        unique_semantic: how repeated rows for the same key within a fetch are treated.
    """
    ordered_return: bool = True
    session_checking: bool = True
    chunk_size: int | None = None
    timeout: timedelta | None = None
    unique_semantic: UniqueSemantic = UniqueSemantic.FILTER

    def __attrs_post_init__(self) -> None:
        if self.chunk_size is not None and self.chunk_size < 1:
            raise ValueError(f'Chunk size must be positive, got {self.chunk_size}')

    def effective_chunk_size(self, session: LoadSession) -> int:
        return self.chunk_size if self.chunk_size is not None else session.config.chunk_size

    def effective_timeout(self, session: LoadSession) -> timedelta | None:
        return self.timeout if self.timeout is not None else session.config.default_timeout


@frozen
class ResolvedKeys:
    """Input keys after normalization, split into those already known and a sparse array of those to fetch."""
    keys: list[Hashable | None] # normalized, one per input position
    found: dict[Hashable, Row]
    to_fetch: list[Hashable | None] # same length as keys; None where nothing needs fetching

    @property
    def fetch_count(self) -> int:
        return sum(1 for key in self.to_fetch if key is not None)


@frozen
class MultiKeyLoader:
    """Loads the rows of a table matching many keys, with one bulk fetch per chunk of keys.

    The key can have one column or several; composite keys are passed as tuples in key_cols order.
    select_cols restricts the columns loaded; the key columns are always included, after the selected columns
    if they are not among them.
    """
    table: DuckdbTable
    key_cols: tuple[str, ...] = field(converter=_key_cols_converter)
    select_cols: tuple[str, ...] | None = field(default=None, converter=_select_cols_converter)
    select_executor: SelectExecutor = field(factory=SelectExecutor, eq=False)
    # Describes the result columns; independent of the chunk size. Creating it validates the column names.
    _template: InPredicateSelect = field(init=False, eq=False, repr=False)

    @_template.default
    def _template_default(self) -> InPredicateSelect:
        return InPredicateSelect.create(self.table, self.key_cols, 1, self.select_cols)

    @staticmethod
    def on_table(conn: DuckDBPyConnection, table_name: str, key_cols: str | Sequence[str], *select_cols: str) -> MultiKeyLoader:
        # Only the loaded columns' types are resolved, so other columns may have types a loader cannot load.
        key_cols = _key_cols_converter(key_cols)
        cols = list(dict.fromkeys((*select_cols, *key_cols))) if select_cols else None
        table = DuckdbTable.from_duckdb(table_name, conn, cols)
        return MultiKeyLoader(table, key_cols, select_cols or None)

    def create_index(self, conn: DuckDBPyConnection) -> None:
        """Create an index on the key columns, if one doesn't exist yet."""
        self.table.key_index(*self.key_cols).create(conn, self.table.name)

    @property
    def schema(self) -> Schema:
        """The schema of the loaded datasets."""
        return self._template.schema

    @property
    def source(self) -> tuple[DuckdbName, tuple[str, ...]]:
        """Identifies the rows this loader produces in a session's identity map: the table and the loaded columns."""
        return (self.table.name, tuple(self.schema.names))

    def normalize_key(self, key: Any) -> Hashable | None:
        """Composite keys can be given as lists; they are converted to tuples.

        UUID key values are converted to their canonical string form, which is how UUID columns are loaded.
        """
        if key is None:
            return None
        if isinstance(key, Padding):
            raise ValueError('Padding is not a key')
        if len(self.key_cols) == 1:
            if isinstance(key, tuple | list):
                raise ValueError(f'Key {self.key_cols[0]} has a single column, got {key!r}')
            return _normalize_part(self._template.shape.cols[0].dtype, key)
        if not isinstance(key, tuple | list):
            raise ValueError(f'Composite key {self.key_cols} must be given as a tuple, got {key!r}')
        if len(key) != len(self.key_cols):
            raise ValueError(f'Composite key {self.key_cols} has {len(self.key_cols)} columns, got {key!r}')
        if all(part is None for part in key):
            return None
        return tuple(_normalize_part(col.dtype, part) for col, part in zip(self._template.shape.cols, key, strict=True))

    def load(self, session: LoadSession, keys: Sequence[Any],
             options: MultiKeyLoadOptions = MultiKeyLoadOptions()) -> Dataset:
        """Load the rows for these keys.

        Rows found are remembered by the session; see MultiKeyLoadOptions for the shape of the result.
        """
        resolved = self.resolve(session, keys, options)
        _logger.info(f'Loading {len(resolved.keys)} keys from {self.table.name}: '
                     f'{len(resolved.found)} already in session, {resolved.fetch_count} to fetch')
        fetched = self.fetch(session, resolved.to_fetch, options)
        return self.assemble(resolved, fetched, options)

    def load_one(self, session: LoadSession, key: Any,
                 options: MultiKeyLoadOptions = MultiKeyLoadOptions()) -> dict[str, Any] | None:
        """Load the row for one key, or return None if there is no such row."""
        resolved = self.resolve(session, [key], options)
        fetched = self.fetch(session, resolved.to_fetch, options)
        normalized = resolved.keys[0]
        row = resolved.found.get(normalized) if normalized is not None else None
        if row is None and normalized is not None:
            row = fetched.get(normalized)
        if row is None:
            return None
        return dict(zip(self.schema.names, row, strict=True))

    def resolve(self, session: LoadSession, keys: Sequence[Any], options: MultiKeyLoadOptions) -> ResolvedKeys:
        """Normalize the keys, and null out those which don't need fetching.

        A key is not fetched if it is None, if the session already holds its row (with session_checking),
        or if it appeared earlier in the input.
        """
        normalized = [self.normalize_key(key) for key in keys]
        found: dict[Hashable, Row] = {}
        to_fetch: list[Hashable | None] = []
        seen: set[Hashable] = set()
        for key in normalized:
            if key is None or key in seen:
                to_fetch.append(None)
                continue
            seen.add(key)
            cached = session.get_cached(self.source, key) if options.session_checking else None
            if cached is not None:
                found[key] = cached
                to_fetch.append(None)
            else:
                to_fetch.append(key)
        return ResolvedKeys(normalized, found, to_fetch)

    def fetch(self, session: LoadSession, keys: Sequence[Hashable | None],
              options: MultiKeyLoadOptions = MultiKeyLoadOptions()) -> dict[Hashable, Row]:
        """Fetch the rows for the non-None keys, which must be normalized and distinct, and register them in the session.

        Returns the rows found, by key.
        """
        statement = cached_statement(session, self.table, self.key_cols,
                                     options.effective_chunk_size(session), self.select_cols)
        chunker = MultiKeyLoadChunker.for_statement(statement, self.select_executor, options.unique_semantic)
        timeout = options.effective_timeout(session)
        results = AggregateResult()
        requested: dict[int, Hashable] = {} # absolute position -> key
        loaded_key_count = 0

        def create_context(bindings: ParameterBindings, context_session: LoadSession) -> ExecutionContext:
            return ExecutionContext(context_session, bindings, results, context_session.config.fetch_batch_size, timeout)

        def collect(key: Hashable | None | Padding, _relative_position: int, absolute_position: int) -> None:
            if not is_absent(key):
                requested[absolute_position] = key

        def on_start(start_index: int) -> None:
            _logger.debug(f'Fetching chunk at {start_index} from {self.table.name}')

        def on_boundary(_start_index: int, non_null_count: int) -> None:
            nonlocal loaded_key_count
            loaded_key_count += non_null_count

        chunker.process_chunks(keys, covering_budget(keys), create_context, collect, on_start, on_boundary, session)

        for key, row in results.items():
            session.register(self.source, key, row)

        missing = [position for position, key in requested.items() if key not in results]
        if requested:
            _logger.debug(f'Fetched {len(results)} rows for {loaded_key_count} keys from {self.table.name}, '
                          f'{len(missing)} keys not found at positions {missing[:10]}')
        return dict(results.items())

    def assemble(self, resolved: ResolvedKeys, fetched: dict[Hashable, Row],
                 options: MultiKeyLoadOptions) -> Dataset:
        """Build the result dataset from rows already in the session and rows fetched."""
        if options.ordered_return:
            rows = [self._row_for(self._template, key, resolved.found, fetched) for key in resolved.keys]
        else:
            rows = [*resolved.found.values(), *(row for key, row in fetched.items() if key not in resolved.found)]
        return Dataset.from_rows(self.schema, rows)

    @staticmethod
    def _row_for(statement: InPredicateSelect, key: Hashable | None,
                 found: dict[Hashable, Row], fetched: dict[Hashable, Row]) -> Row:
        if key is not None:
            row = found.get(key)
            if row is None:
                row = fetched.get(key)
            if row is not None:
                return row
        missing_row: list[Any] = [None] * len(statement.schema)
        if key is not None:
            key_parts = key if statement.shape.is_composite else (key,)
            for index, part in zip(statement.key_indices, key_parts, strict=True): # type: ignore[arg-type]
                missing_row[index] = part
        return tuple(missing_row)


async def load_concurrently(session: LoadSession, loader: MultiKeyLoader, keys: Sequence[Any],
                            options: MultiKeyLoadOptions = MultiKeyLoadOptions(),
                            max_parallel: int = 4) -> Dataset:
    """Load the keys by running up to max_parallel loads at once, each on its own thread and forked session.

    The keys to fetch are split into disjoint ranges whose sizes are multiples of the chunk size,
    so every range binds the same statement. The results are merged and registered in this session.
    """
    if max_parallel < 1:
        raise ValueError(f'max_parallel must be positive, got {max_parallel}')

    resolved = loader.resolve(session, keys, options)
    pending = [key for key in resolved.to_fetch if key is not None]
    chunk_size = options.effective_chunk_size(session)
    chunks = math.ceil(len(pending) / chunk_size)
    range_size = max(1, math.ceil(chunks / max_parallel)) * chunk_size
    ranges = [pending[start:start + range_size] for start in range(0, len(pending), range_size)]
    _logger.info(f'Loading {len(pending)} keys from {loader.table.name} in {len(ranges)} parallel ranges')

    async def fetch_range(range_keys: list[Hashable]) -> dict[Hashable, Row]:
        forked = session.fork()
        def run() -> dict[Hashable, Row]:
            with forked:
                return loader.fetch(forked, range_keys, options)
        return await asyncio.to_thread(run)

    fetched: dict[Hashable, Row] = {}
    for range_result in await asyncio.gather(*(fetch_range(range_keys) for range_keys in ranges)):
        fetched.update(range_result)
    for key, row in fetched.items():
        session.register(loader.source, key, row)

    return loader.assemble(resolved, fetched, options)
