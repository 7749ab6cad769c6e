"""The core APIs used by all of multiload.

Module separation (avoiding circular imports):

- types: class Dtype; definition and translation between duckdb and polars; everything that comes after this can depend on it.
- schema: class Schema; everything that comes after this can depend on it.

- database: classes DuckdbName, DuckdbTable, ArtIndex, DuckdbConfig, DuckdbManager.
- dataset: class Dataset (a polars DataFrame with a Schema), and conversion from duckdb results and plain rows.

The loading code in multiload.load depends on all of these.
"""
default_chunk_size = 64
'''Number of keys bound into a single bulk fetch. Used as a default value in function signatures.

Changing this value at runtime does NOT affect the defaults, so don't do it.
'''

default_fetch_batch_size = 1000
'''Number of result rows read from a cursor at a time.'''
