"""The bulk fetch: a fixed-arity SELECT by key, and the executor that runs it and collects unique rows."""

from __future__ import annotations

import enum
import logging
from collections.abc import Hashable, Sequence
from typing import Any

from attrs import frozen

from multiload.core.database import DuckdbName, DuckdbTable
from multiload.core.schema import Field, Schema
from multiload.load.binding import KeyShape, ParameterBindings, StatementParameter
from multiload.load.context import ExecutionContext, LoadSession, Row
from multiload.util.duckdbutil import interrupt_after, read_results

_logger = logging.getLogger(__name__)

type StatementKey = tuple[DuckdbName, tuple[str, ...], tuple[str, ...] | None, int]


class DuplicateRowError(ValueError):
    """A fetch returned more than one row for the same key, and UniqueSemantic.ASSERT was requested."""


class UniqueSemantic(enum.Enum):
    """How a fetch treats several result rows with the same row key (e.g. because of join fan-out)."""
    NONE = 'none'
    '''Return every row. Rows are still merged into the aggregate by key.'''
    FILTER = 'filter'
    '''Keep the first row for each key, drop the rest.'''
    ASSERT = 'assert'
    '''Raise DuplicateRowError if a key repeats.'''
    ALLOW = 'allow'
    '''Like NONE; the caller knows duplicates may occur and does not care.'''


@frozen
class InPredicateSelect:
    """SELECT <cols> FROM <table> WHERE <key> IN (<chunk_size keys>).

    The statement always has chunk_size * key column count parameters; unused key positions are bound to NULL,
    which never matches. Instances are immutable and cached by the session's statement cache, so every chunk of every
    load of the same table, key, columns and chunk size runs the same statement.
    """
    table: DuckdbName
    shape: KeyShape
    schema: Schema # the selected columns, in result order
    chunk_size: int
    sql: str
    parameters: tuple[StatementParameter, ...]
    key_indices: tuple[int, ...] # positions of the key columns in schema

    def row_key(self, row: Sequence[Any]) -> Hashable:
        """The key of a result row: a scalar for a single-column key, else a tuple."""
        if len(self.key_indices) == 1:
            return row[self.key_indices[0]]
        return tuple(row[i] for i in self.key_indices)

    @staticmethod
    def create(table: DuckdbTable, key_cols: Sequence[str], chunk_size: int,
               select_cols: Sequence[str] | None = None) -> InPredicateSelect:
        if chunk_size < 1:
            raise ValueError(f'Chunk size must be positive, got {chunk_size}')
        if not key_cols:
            raise ValueError('At least one key column is required')
        if len(set(key_cols)) != len(key_cols):
            raise ValueError(f'Duplicate key columns: {key_cols}')
        for col in key_cols:
            if col not in table.schema:
                raise ValueError(f'Key column {col} not found in table {table.name.name}')

        if select_cols is None:
            select_cols = table.schema.names
        # The key columns are always selected, so that result rows can be matched to keys.
        select_cols = [*select_cols, *(col for col in key_cols if col not in select_cols)]
        schema = table.schema.select(*select_cols)
        shape = KeyShape(tuple(table.schema[col] for col in key_cols))

        parameters = tuple(
            StatementParameter(position, shape.cols[position % shape.column_count].dtype)
            for position in range(chunk_size * shape.column_count)
        )
        select_list = ', '.join(_select_expr(col) for col in schema.cols)
        sql = f'SELECT {select_list} FROM {table.name} WHERE {_key_predicate(shape, chunk_size)}'

        return InPredicateSelect(table.name, shape, schema, chunk_size, sql, parameters,
                                 tuple(schema.index_of(col) for col in key_cols))


def _select_expr(col: Field) -> str:
    # Values of these columns come back from duckdb as e.g. uuid.UUID, but are loaded as strings.
    if col.dtype.erased_to_string:
        return f'CAST({col.quoted_name} AS VARCHAR) AS {col.quoted_name}'
    return col.quoted_name


def _key_predicate(shape: KeyShape, chunk_size: int) -> str:
    if not shape.is_composite:
        col = shape.cols[0]
        placeholders = ', '.join(f'CAST(? AS {col.dtype.sql_type})' for _ in range(chunk_size))
        return f'{col.quoted_name} IN ({placeholders})'

    # A disjunction of per-key conjunctions rather than a row-value IN list; a NULL binding makes its term NULL,
    # i.e. not true, so padding matches nothing.
    term = ' AND '.join(f'{col.quoted_name} = CAST(? AS {col.dtype.sql_type})' for col in shape.cols)
    return ' OR '.join(f'({term})' for _ in range(chunk_size))


def cached_statement(session: LoadSession, table: DuckdbTable, key_cols: Sequence[str], chunk_size: int,
                     select_cols: Sequence[str] | None = None) -> InPredicateSelect:
    """Get the statement from the session's statement cache, creating it on first use."""
    statement, created = session.statement_cache.get_or_create(
        (table.name, tuple(key_cols), None if select_cols is None else tuple(select_cols), chunk_size),
        lambda: InPredicateSelect.create(table, key_cols, chunk_size, select_cols)
    )
    if created:
        session.statistics.statement_cache_misses.inc_and_get()
        _logger.debug(f'Created statement for {table.name} by {tuple(key_cols)} with chunk size {chunk_size}')
    else:
        session.statistics.statement_cache_hits.inc_and_get()
    return statement


class SelectExecutor:
    """Runs a bulk fetch and merges the resulting rows into the context's aggregate result.

    Stateless; a single instance can be shared.
    """

    def list(self, statement: InPredicateSelect, bindings: ParameterBindings, context: ExecutionContext,
             unique_semantic: UniqueSemantic = UniqueSemantic.FILTER) -> list[Row]:
        """Execute the statement with the given bindings and return the rows, after applying unique_semantic.

        Failures of the underlying query (including a TimeoutError if the context's timeout expires)
        propagate; rows merged by previous calls remain in the context's aggregate result.
        """
        if bindings.capacity != len(statement.parameters):
            raise ValueError(f'Bindings capacity {bindings.capacity} does not match '
                             f'the statement parameter count {len(statement.parameters)}')
        params = bindings.values()
        conn = context.connection

        with interrupt_after(conn, context.timeout):
            conn.execute(statement.sql, params)
            rows = read_results(conn, context.fetch_batch_size)

        statistics = context.session.statistics
        statistics.fetches.inc_and_get()
        statistics.rows_fetched.inc_and_get(len(rows))

        result = self._apply_unique_semantic(statement, rows, unique_semantic)
        duplicates = 0
        for row in result:
            if not context.results.merge(statement.row_key(row), row):
                duplicates += 1
        duplicates += len(rows) - len(result)
        if duplicates:
            statistics.duplicate_rows.inc_and_get(duplicates)
            _logger.debug(f'Folded {duplicates} duplicate rows from {statement.table}')
        return result

    @staticmethod
    def _apply_unique_semantic(statement: InPredicateSelect, rows: list[Row],
                               unique_semantic: UniqueSemantic) -> list[Row]:
        match unique_semantic:
            case UniqueSemantic.NONE | UniqueSemantic.ALLOW:
                return rows
            case UniqueSemantic.FILTER:
                seen: set[Hashable] = set()
                unique_rows = []
                for row in rows:
                    key = statement.row_key(row)
                    if key not in seen:
                        seen.add(key)
                        unique_rows.append(row)
                return unique_rows
            case UniqueSemantic.ASSERT:
                keys = [statement.row_key(row) for row in rows]
                if len(set(keys)) != len(keys):
                    duplicated = sorted({repr(key) for key in keys if keys.count(key) > 1})
                    raise DuplicateRowError(f'Fetch from {statement.table} returned duplicate rows for keys {duplicated}')
                return rows
