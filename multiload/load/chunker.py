"""Splitting a multi-key load into chunks of a fixed number of keys.

When the number of keys to load exceeds what a single statement binds, the load is broken into chunks.
Each chunk binds exactly chunk_size keys, padding past the end of the key array with NULLs,
so that every chunk executes the same statement.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from multiload.load.binding import (
    PADDING,
    BindingContractError,
    KeyShape,
    Padding,
    ParameterBindings,
    StatementParameter,
    is_absent,
)
from multiload.load.context import ExecutionContext, LoadSession
from multiload.load.select import InPredicateSelect, SelectExecutor, UniqueSemantic

_logger = logging.getLogger(__name__)


class ExecutionContextCreator(Protocol):
    def __call__(self, bindings: ParameterBindings, session: LoadSession) -> ExecutionContext: ...


class KeyCollector[K](Protocol):
    """Called for every key position of every chunk, including absent keys and padding."""
    def __call__(self, key: K | None | Padding, relative_position: int, absolute_position: int) -> None: ...


class ChunkStartListener(Protocol):
    """Called when a chunk starts, before anything is bound."""
    def __call__(self, start_index: int) -> None: ...


class ChunkBoundaryListener(Protocol):
    """Called after a chunk's fetch completed and its rows were merged. Never called for a chunk without real keys."""
    def __call__(self, start_index: int, non_null_count: int) -> None: ...


class MultiKeyLoadChunker[K]:
    """Loads keys in chunks of a fixed size, one bulk fetch per chunk.

    Args:
        chunk_size: number of key positions per chunk.
        key_column_count: number of parameters each key position binds.
        shape: the key's columns; binding uses it to decompose keys into column values.
        parameters: the statement's parameters. There must be exactly chunk_size * key_column_count of them.
        statement: the fetch executed for each chunk that contains at least one real key.
        select_executor: runs the statement.
        unique_semantic: how the executor treats repeated rows within one fetch.
    """

    def __init__(self, chunk_size: int, key_column_count: int, shape: KeyShape,
                 parameters: Sequence[StatementParameter], statement: InPredicateSelect,
                 select_executor: SelectExecutor | None = None,
                 unique_semantic: UniqueSemantic = UniqueSemantic.FILTER):
        if chunk_size < 1:
            raise ValueError(f'Chunk size must be positive, got {chunk_size}')
        if key_column_count < 1:
            raise ValueError(f'Key column count must be positive, got {key_column_count}')
        self.chunk_size = chunk_size
        self.key_column_count = key_column_count
        self.shape = shape
        self.parameters = tuple(parameters)
        self.statement = statement
        self.select_executor = select_executor if select_executor is not None else SelectExecutor()
        self.unique_semantic = unique_semantic

    @staticmethod
    def for_statement(statement: InPredicateSelect, select_executor: SelectExecutor | None = None,
                      unique_semantic: UniqueSemantic = UniqueSemantic.FILTER) -> MultiKeyLoadChunker[Any]:
        return MultiKeyLoadChunker(statement.chunk_size, statement.shape.column_count, statement.shape,
                                   statement.parameters, statement, select_executor, unique_semantic)

    def process_chunks(self, keys: Sequence[K | None], non_null_element_count: int,
                       context_creator: ExecutionContextCreator,
                       key_collector: KeyCollector[K],
                       start_listener: ChunkStartListener,
                       boundary_listener: ChunkBoundaryListener,
                       session: LoadSession) -> None:
        """Process the chunks.

        Args:
            keys: the keys to load. May contain None for keys that don't need loading.
            non_null_element_count: the number of non-None values in keys. It must not be smaller than the true count,
                                    or trailing keys are silently never loaded; it is trusted, not checked.
                                    A larger value costs at most additional chunks made entirely of padding,
                                    which are skipped without a fetch.
            context_creator: creates the execution context for each fetch.
            key_collector: called for each key position as it is processed.
            start_listener: notified that processing a chunk has started.
            boundary_listener: notified that processing a chunk has completed.
            session: passed through to binding and to context_creator.
        """
        if non_null_element_count < 0:
            raise ValueError(f'Non-null element count must not be negative, got {non_null_element_count}')

        number_of_keys_left = non_null_element_count
        start = 0
        while number_of_keys_left > 0:
            self._process_chunk(keys, start, context_creator, key_collector, start_listener, boundary_listener, session)

            start += self.chunk_size
            number_of_keys_left -= self.chunk_size

    def _process_chunk(self, keys: Sequence[K | None], start_index: int,
                       context_creator: ExecutionContextCreator,
                       key_collector: KeyCollector[K],
                       start_listener: ChunkStartListener,
                       boundary_listener: ChunkBoundaryListener,
                       session: LoadSession) -> None:
        start_listener(start_index)
        session.statistics.chunks_started.inc_and_get()

        parameter_count = self.chunk_size * self.key_column_count
        bindings = ParameterBindings(parameter_count)

        non_null_counter = 0
        bind_count = 0
        for i in range(self.chunk_size):
            # the position within `keys`
            key_position = i + start_index
            value: K | None | Padding = keys[key_position] if key_position < len(keys) else PADDING

            key_collector(value, i, key_position)

            if not is_absent(value):
                non_null_counter += 1

            bind_count += bindings.register_parameters_for_each_value(
                value, bind_count, self.shape, self.parameters, session
            )

        if bind_count != len(self.parameters) or bind_count != parameter_count:
            raise BindingContractError(f'Bound {bind_count} values for a chunk of {self.chunk_size} keys, '
                                       f'expected {parameter_count} ({len(self.parameters)} statement parameters)')

        if non_null_counter == 0:
            # there are no real keys in the chunk
            _logger.debug(f'Skipping chunk at {start_index}: no keys to load')
            session.statistics.chunks_skipped.inc_and_get()
            return

        context = context_creator(bindings, session)
        rows = self.select_executor.list(self.statement, bindings, context, self.unique_semantic)
        _logger.debug(f'Chunk at {start_index}: {non_null_counter} keys, {len(rows)} rows')

        boundary_listener(start_index, non_null_counter)
