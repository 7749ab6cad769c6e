from typing import Any, override

import polars as pl
from attrs import field, frozen

# Wrapper for Polars DFs whose == returns a bool (and not a DF of bools)
# allowing them to be compared for equality when used as dataclass fields.
# It's still not hashable, because it's expensive and we have nowhere to cache the result
# (instances of this class are transient, created on-demand by the containing dataclass's __eq__).

@frozen(eq=False, hash=False)
class ComparablePolarsDataFrame:
    df: pl.DataFrame

    @override
    def __eq__(self, other: object) -> bool:
        if isinstance(other, pl.DataFrame):
            return self.df.equals(other)
        elif isinstance(other, ComparablePolarsDataFrame):
            return self.df.equals(other.df)
        else:
            return False

# Use this for conveniently defining attrs fields of DF type when the containing class should be comparable.
# Creating a dataclass with a DF field without any custom eq logic will result in the dataclass's __eq__
# always throwing an error, because DataFrame.__eq__ returns a DF and not a single bool.

def df_field(**kwargs: Any) -> Any:
    return field(eq=ComparablePolarsDataFrame, hash=False, **kwargs)
