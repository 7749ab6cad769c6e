"""Binding key values to the parameters of a fixed-arity statement.

A statement that loads up to N keys of a key with C columns always has exactly N*C parameters.
Every key position binds C values, whether it holds a real key or not; absent keys and padding bind typed NULLs.
This keeps the statement text, and therefore any plan duckdb or we cache for it, identical for every chunk.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Final

from attrs import frozen

from multiload.core.schema import Field
from multiload.core.types import Dtype

if TYPE_CHECKING:
    from multiload.load.context import LoadSession


class Padding(enum.Enum):
    """Marks a key position past the end of the key array.

    Distinct from None, which is an absent key inside the array (e.g. a key already resolved from the session).
    Both bind as NULLs and neither is counted as a real key.
    """
    PADDING = 'padding'

    def __repr__(self) -> str:
        return 'PADDING'

PADDING: Final = Padding.PADDING


def is_absent(value: object) -> bool:
    return value is None or value is PADDING


class BindingContractError(RuntimeError):
    """The number of values bound disagrees with the number of statement parameters.

    This is a programming error (the key shape and the statement disagree about a key's arity), never a data error.
    It is not retried or caught anywhere in this library.
    """


@frozen
class KeyShape:
    """The columns making up a key, in binding order."""

    cols: tuple[Field, ...]

    def __attrs_post_init__(self) -> None:
        if not self.cols:
            raise ValueError('A key must have at least one column')

    @property
    def column_count(self) -> int:
        return len(self.cols)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(col.name for col in self.cols)

    @property
    def is_composite(self) -> bool:
        return len(self.cols) > 1

    def decompose(self, value: Any) -> tuple[Any, ...]:
        """Split a key into the values bound for each of its columns.

        Absent keys decompose into one None per column. A composite key must be given as a tuple;
        its length is not checked here, so a wrong-length tuple binds the wrong number of values
        and is caught by the caller's bind count check.
        """
        if is_absent(value):
            return (None,) * self.column_count
        if isinstance(value, tuple):
            return value
        if self.is_composite:
            raise ValueError(f'Composite key {self.names} must be given as a tuple, got {value!r}')
        return (value,)


@frozen
class StatementParameter:
    """One positional parameter ('?') of a statement, and the type it is cast to."""
    position: int
    dtype: Dtype


@frozen
class ParameterBinding:
    parameter: StatementParameter
    value: Any


class ParameterBindings:
    """The values bound to one execution of a statement. Fixed capacity; created fresh for each chunk."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f'Capacity must be positive, got {capacity}')
        self._bindings: list[ParameterBinding | None] = [None] * capacity

    @property
    def capacity(self) -> int:
        return len(self._bindings)

    @property
    def bound_count(self) -> int:
        return sum(1 for binding in self._bindings if binding is not None)

    def __getitem__(self, index: int) -> ParameterBinding | None:
        return self._bindings[index]

    def register_parameters_for_each_value(self, value: Any, offset: int, shape: KeyShape,
                                           parameters: Sequence[StatementParameter],
                                           session: LoadSession | None = None) -> int:
        """Bind one key (or an absent key, or padding) starting at parameters[offset].

        Returns the number of parameters bound. For a given shape this is the same for real keys and absent ones.
        The session is accepted for symmetry with the other collaborators that take one; binding doesn't use it.
        """
        values = shape.decompose(value)
        if offset + len(values) > len(parameters) or offset + len(values) > self.capacity:
            raise BindingContractError(f'Binding {len(values)} values at offset {offset} overflows '
                                       f'{len(parameters)} parameters (capacity {self.capacity})')
        for i, column_value in enumerate(values):
            parameter = parameters[offset + i]
            self._bindings[parameter.position] = ParameterBinding(parameter, column_value)
        return len(values)

    def values(self) -> list[Any]:
        """The bound values in parameter order, as passed to duckdb."""
        unbound = [i for i, binding in enumerate(self._bindings) if binding is None]
        if unbound:
            raise BindingContractError(f'Parameters at positions {unbound} were never bound')
        return [binding.value for binding in self._bindings if binding is not None]

    def __repr__(self) -> str:
        return f'ParameterBindings({self.bound_count}/{self.capacity})'
