from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

import polars as pl
from attrs import frozen

from multiload.core.schema import Schema
from multiload.util.polarutil import df_field


@frozen
class Dataset:
    """A dataframe with a schema.

    Loaded rows are returned as Datasets, so the caller sees the declared column types
    even when every loaded value in a column is null.
    """

    schema: Schema
    data: pl.DataFrame = df_field()

    @property
    def height(self) -> int:
        return self.data.height

    def __len__(self) -> int:
        return self.height

    def to_dicts(self) -> list[dict[str, Any]]:
        return self.data.to_dicts()

    @staticmethod
    def from_rows(schema: Schema, rows: Iterable[Sequence[Any]]) -> Dataset:
        """Build a dataset from tuples in schema column order, as returned by duckdb's fetch methods."""
        return Dataset(schema, pl.DataFrame(list(rows), schema=schema.to_polars(), orient='row'))
