import pytest

from multiload.core import types
from multiload.core.schema import Field
from multiload.load.binding import (
    PADDING,
    BindingContractError,
    KeyShape,
    ParameterBindings,
    StatementParameter,
    is_absent,
)

single = KeyShape((Field('id', types.int32),))
pair = KeyShape((Field('a', types.int32), Field('b', types.string)))


def parameters_for(shape: KeyShape, keys: int) -> tuple[StatementParameter, ...]:
    return tuple(StatementParameter(i, shape.cols[i % shape.column_count].dtype)
                 for i in range(keys * shape.column_count))


def test_absent_values() -> None:
    assert is_absent(None) and is_absent(PADDING)
    assert not is_absent(0) and not is_absent('') and not is_absent(())
    assert repr(PADDING) == 'PADDING'


def test_key_shape() -> None:
    assert single.column_count == 1 and not single.is_composite
    assert pair.column_count == 2 and pair.is_composite
    assert pair.names == ('a', 'b')

    assert single.decompose(5) == (5,)
    assert single.decompose(None) == (None,)
    assert pair.decompose((1, 'x')) == (1, 'x')
    assert pair.decompose(PADDING) == (None, None)
    assert pair.decompose((1, 'x', 'extra')) == (1, 'x', 'extra'), 'Length is checked by the bind count'
    with pytest.raises(ValueError, match='must be given as a tuple'):
        pair.decompose(1)
    with pytest.raises(ValueError, match='at least one column'):
        KeyShape(())


def test_bind_single_column_keys() -> None:
    parameters = parameters_for(single, 3)
    bindings = ParameterBindings(3)
    offset = 0
    for key in [7, None, PADDING]:
        offset += bindings.register_parameters_for_each_value(key, offset, single, parameters)
    assert offset == 3
    assert bindings.bound_count == bindings.capacity == 3
    assert bindings.values() == [7, None, None]
    binding = bindings[0]
    assert binding is not None and binding.parameter == parameters[0] and binding.value == 7
    assert repr(bindings) == 'ParameterBindings(3/3)'


def test_bind_composite_keys() -> None:
    parameters = parameters_for(pair, 2)
    bindings = ParameterBindings(4)
    assert bindings.register_parameters_for_each_value((1, 'x'), 0, pair, parameters) == 2
    assert bindings.register_parameters_for_each_value(None, 2, pair, parameters) == 2, \
        'An absent key binds as many values as a real one'
    assert bindings.values() == [1, 'x', None, None]


def test_unbound_parameters_are_an_error() -> None:
    parameters = parameters_for(single, 2)
    bindings = ParameterBindings(2)
    bindings.register_parameters_for_each_value(1, 0, single, parameters)
    assert bindings.bound_count == 1
    assert bindings[1] is None
    with pytest.raises(BindingContractError, match='never bound'):
        bindings.values()


def test_overflow_is_an_error() -> None:
    parameters = parameters_for(pair, 1)
    bindings = ParameterBindings(2)
    with pytest.raises(BindingContractError, match='overflows'):
        bindings.register_parameters_for_each_value((1, 'x', 'y'), 0, pair, parameters)

    # A tuple bound to a single-column key binds its elements
    parameters = parameters_for(single, 1)
    bindings = ParameterBindings(1)
    with pytest.raises(BindingContractError):
        bindings.register_parameters_for_each_value((1, 2), 0, single, parameters)


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError, match='Capacity must be positive'):
        ParameterBindings(0)
