from __future__ import annotations

import duckdb
import duckdb.typing as ddt
import polars as pl
import polars.datatypes
from attrs import field, frozen

# We define these types instead of using duckdb or polars types directly because key columns are bound
# as typed parameters (CAST(? AS <duckdb type>)), and loaded rows are returned as polars data.

# Used in some Polars APIs. Copy of a type union defined in polars._types.
type PolarsDataType = pl.DataType | polars.datatypes.DataTypeClass

@frozen
class Dtype:
    name: str
    duckdb_type: ddt.DuckDBPyType = field(eq=False, hash=False)
    polars_type: PolarsDataType = field(eq=False, hash=False)

    def __str__(self) -> str:
        return self.name

    @property
    def sql_type(self) -> str:
        """The type name as it appears in a CAST expression."""
        return str(self.duckdb_type)

    @property
    def erased_to_string(self) -> bool:
        """Stored as a non-string duckdb type, but loaded as strings (e.g. UUID)."""
        return self.polars_type == pl.String and str(self.duckdb_type) != str(ddt.VARCHAR)

    @staticmethod
    def from_duckdb(ddtype: ddt.DuckDBPyType) -> Dtype:
        return dtype_from_duckdb(ddtype)


boolean = Dtype('bool', ddt.BOOLEAN, pl.Boolean)

int8 = Dtype('int8', ddt.TINYINT, pl.Int8)
int16 = Dtype('int16', ddt.SMALLINT, pl.Int16)
int32 = Dtype('int32', ddt.INTEGER, pl.Int32)
int64 = Dtype('int64', ddt.BIGINT, pl.Int64)

uint8 = Dtype('uint8', ddt.UTINYINT, pl.UInt8)
uint16 = Dtype('uint16', ddt.USMALLINT, pl.UInt16)
uint32 = Dtype('uint32', ddt.UINTEGER, pl.UInt32)
uint64 = Dtype('uint64', ddt.UBIGINT, pl.UInt64)

float32 = Dtype('float32', ddt.FLOAT, pl.Float32)
float64 = Dtype('float64', ddt.DOUBLE, pl.Float64)

string = Dtype('str', ddt.VARCHAR, pl.String)
json_dtype = Dtype('json', duckdb.dtype('JSON'), pl.String)
uuid_dtype = Dtype('uuid', ddt.UUID, pl.String)

date_dtype = Dtype('date', ddt.DATE, pl.Date)
time_dtype = Dtype('time', ddt.TIME, pl.Time)

# Each timestamp precision is its own dtype; binding a key with a coarser cast would truncate it.
timestamp = Dtype('timestamp', ddt.TIMESTAMP, pl.Datetime('us'))
timestamp_ms = Dtype('timestamp_ms', ddt.TIMESTAMP_MS, pl.Datetime('ms'))

_simple_dtypes = [boolean, int8, int16, int32, int64, uint8, uint16, uint32, uint64, float32, float64, string, json_dtype, uuid_dtype,
                  date_dtype, time_dtype, timestamp, timestamp_ms]
_simple_dtype_by_duckdb_type_str = {str(dtype.duckdb_type): dtype for dtype in _simple_dtypes}

def dtype_from_duckdb(ddtype: ddt.DuckDBPyType) -> Dtype:
    if str(ddtype) in _simple_dtype_by_duckdb_type_str:
        return _simple_dtype_by_duckdb_type_str[str(ddtype)]
    else:
        raise ValueError(f'Unsupported duckdb type: {ddtype}')
