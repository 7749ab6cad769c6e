from __future__ import annotations

import polars as pl
from attrs import field, frozen
from duckdb import DuckDBPyRelation
from frozendict import frozendict

from multiload.core.types import Dtype
from multiload.util.attrutil import frozendict_converter


@frozen
class Field:
    """We treat all fields as always nullable; an unknown key loads as a row of nulls."""

    name: str
    dtype: Dtype

    def to_polars(self) -> pl.Field:
        return pl.Field(self.name, self.dtype.polars_type)

    @property
    def quoted_name(self) -> str:
        return '"' + self.name.replace('"', '""') + '"'


@frozen
class Schema:
    cols: tuple[Field, ...]
    _by_name: frozendict[str, Field] = field(init=False, eq=False, hash=False, repr=False, converter=frozendict_converter)

    @_by_name.default
    def _by_name_default(self) -> dict[str, Field]:
        # duckdb allows duplicate names of columns in a relation, but polars doesn't allow duplicate column names in a DataFrame
        if len({col.name for col in self.cols}) != len(tuple(self.cols)):
            raise ValueError(f'Duplicate column names: {self.names}')
        return {col.name: col for col in self.cols}

    @property
    def names(self) -> list[str]:
        return [col.name for col in self.cols]

    @property
    def dtypes(self) -> list[Dtype]:
        return [col.dtype for col in self.cols]

    def select(self, *cols: str) -> Schema:
        """Select columns in the order given, which need not be the schema's order."""
        for col in cols:
            if col not in self._by_name:
                raise ValueError(f'Column {col} not in schema {self.names}')
        return Schema(tuple(self._by_name[col] for col in cols))

    def index_of(self, col_name: str) -> int:
        return self.names.index(col_name)

    def __len__(self) -> int:
        return len(tuple(self.cols))

    def __getitem__(self, col_name: str) -> Field:
        return self._by_name[col_name]

    def __contains__(self, col_name: object) -> bool:
        return col_name in self._by_name

    def to_polars(self) -> pl.Schema:
        return pl.Schema((col.name, col.dtype.polars_type) for col in self.cols)

    @staticmethod
    def from_duckdb(relation: DuckDBPyRelation) -> Schema:
        return Schema(tuple(Field(col, Dtype.from_duckdb(ddtype)) for col, ddtype in zip(relation.columns, relation.types, strict=True)))
