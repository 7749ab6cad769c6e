from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import override

import cattrs
import duckdb
from attrs import define, field, frozen
from duckdb import DuckDBPyConnection
from frozendict import frozendict

from multiload.core.schema import Schema
from multiload.util.attrutil import frozendict_converter

_logger = logging.getLogger(__name__)


@frozen
class DuckdbName:
    """A fully qualified name of a database object (table, index, view, ...) for use in duckdb statements.

    Qualified names are needed to use multiple databases and/or schemas.

    In SQL queries and statements, instances should be stringified and NOT additionally quoted;
    str(DuckdbName) takes care of quoting.

    A fully qualified name's stringification includes all of its components, because a loader's statement
    is cached and reused on cursors whose current database or schema may differ.
    """

    name: str
    database: str
    schema: str = 'main'

    def __str__(self) -> str:
        return f'"{self.database}"."{self.schema}"."{self.name}"'

    @staticmethod
    def qualify(name: str, conn: DuckDBPyConnection) -> DuckdbName:
        """Fill in the current database and schema names from the connection."""
        schema, database = conn.sql('SELECT current_schema(), current_database()').fetchall()[0]
        return DuckdbName(name, database, schema)


@frozen
class DuckdbTable:
    """A table in a DuckDB database, as seen by a loader: its qualified name, column types and existing indexes."""
    name: DuckdbName
    schema: Schema
    indexes: tuple[ArtIndex, ...] = ()

    def key_index(self, *cols: str) -> ArtIndex:
        """An index on the given key columns, named after them. Loading by key uses it if it exists."""
        for col in cols:
            if col not in self.schema:
                raise ValueError(f'Column {col} not found in table {self.name.name}')
        return ArtIndex(
            name=DuckdbName(f'art_by_{'_'.join(cols)}', self.name.database, self.name.schema),
            cols=tuple(cols)
        )

    @staticmethod
    def from_duckdb(name: DuckdbName | str, conn: DuckDBPyConnection, cols: Sequence[str] | None = None) -> DuckdbTable:
        """Read the table's schema and indexes.

        If cols is given, the schema has only those columns, in that order; the types of other columns
        are not resolved, so they may be types a loader cannot load.
        """
        if isinstance(name, str):
            name = DuckdbName.qualify(name, conn)
        relation = conn.table(str(name))
        if cols is not None:
            relation = relation.select(*(f'"{col}"' for col in cols))
        return DuckdbTable(name, Schema.from_duckdb(relation), ArtIndex.from_duckdb(name, conn))


@frozen
class ArtIndex:
    """An ART index (the default duckdb index type) on some columns of a table.

    Loading by key filters on equality of every key column, which duckdb answers from an ART index on those columns
    when one exists. See https://duckdb.org/docs/stable/sql/indexes.html; the index must fit in memory while
    it is created.
    """

    name: DuckdbName
    cols: tuple[str, ...]

    def create(self, conn: DuckDBPyConnection, table_name: DuckdbName | str, if_not_exists: bool = True) -> None:
        if isinstance(table_name, str):
            table_name = DuckdbName.qualify(table_name, conn)

        if table_name.database != self.name.database or table_name.schema != self.name.schema:
            raise ValueError(f'Cannot create index {self.name} on table ({table_name}) in a different database or schema')

        #  The docs say that IF NOT EXISTS is currently badly implemented; it will spend the time building
        #  the new index anyway, and only then discard it if it already exists.
        if if_not_exists and self.name in {index.name for index in ArtIndex.from_duckdb(table_name, conn)}:
            return

        col_specs = ', '.join(f'"{col}"' for col in self.cols)
        # The index name cannot be fully qualified in a CREATE INDEX statement.
        # The table name is qualified and that is enough to place the index into the same database and schema as the table.
        conn.execute(f'CREATE INDEX "{self.name.name}" ON {table_name} ({col_specs})')

    @staticmethod
    def from_duckdb(table_name: DuckdbName | str, conn: DuckDBPyConnection) -> tuple[ArtIndex, ...]:
        if isinstance(table_name, str):
            table_name = DuckdbName.qualify(table_name, conn)

        results = conn.execute("""SELECT index_name, expressions::VARCHAR[] from duckdb_indexes()
                               WHERE table_name = ? AND database_name = ? AND schema_name = ?
                               AND sql NOT ILIKE '%USING RTREE%'""",
                               [table_name.name, table_name.database, table_name.schema]).fetchall()
        # duckdb quotes names in the output of this query iff quoting is required
        return tuple(
            ArtIndex(DuckdbName(result[0].strip('"'), table_name.database, table_name.schema),
                     tuple(col.strip('"') for col in result[1]))
            for result in results
        )


class DuckdbDatabase(ABC):
    @property
    @abstractmethod
    def default_name(self) -> str:
        """The name duckdb attaches this database under unless another name is given."""
        ...

    @property
    @abstractmethod
    def read_only(self) -> bool: ...

@frozen
class DuckdbInMemoryDatabase(DuckdbDatabase):
    """An anonymous in-memory database, reachable only through the manager that created it."""
    @property
    @override
    def default_name(self) -> str:
        return 'memory'

    @property
    @override
    def read_only(self) -> bool:
        return False

@frozen
class DuckdbFilesystemDatabase(DuckdbDatabase):
    """A database file, created if it does not exist (unless read_only)."""
    path: Path
    read_only: bool = False

    @property
    @override
    def default_name(self) -> str:
        return self.path.stem


@frozen
class DuckdbConfig:
    """Options for the connection a DuckdbManager opens; see https://duckdb.org/docs/stable/configuration/overview.html.

    Options without an attribute here go in kwargs. Attributes override kwargs entries of the same name;
    attributes left as None keep the duckdb default.
    """
    memory_limit: str | None = None # Default is 80% of available system RAM
    threads: int | None = None # Default is the number of CPU cores

    # Replacement scans would let a statement refer to Python variables by name; loading statements never do,
    # and a stray local variable shadowing a table name would silently change what a statement reads.
    python_enable_replacements: bool | None = False

    kwargs: frozendict[str, object] = field(factory=frozendict, converter=frozendict_converter)

    def to_config_dict(self) -> dict[str, object]:
        set_fields = { k: v for k, v
                       in cattrs.Converter().unstructure_attrs_asdict(self).items()
                       if v is not None and k != 'kwargs' }
        return { **self.kwargs, **set_fields}


@define(init=False, eq=False, hash=False)
class DuckdbManager:
    """Owns the duckdb connection that loading sessions take their cursors from.

    Each cursor must be used by one thread at a time; LoadSession.open() and LoadSession.fork() each take a new one.
    Attaching or detaching a database is not threadsafe, and affects every cursor already handed out.

    The main database keeps its duckdb default name: the file stem for on-disk databases, 'memory' for in-memory ones.
    Tables in other attached databases are loaded through their qualified DuckdbName.
    """

    _conn: DuckDBPyConnection
    _conn_lock: threading.Lock
    _main_database: DuckdbDatabase
    _databases: dict[str, DuckdbDatabase] # By database name

    def __init__(self, main_database: DuckdbDatabase, config: DuckdbConfig = DuckdbConfig()):
        match main_database:
            case DuckdbInMemoryDatabase():
                self._conn = duckdb.connect(':memory:', config=config.to_config_dict())
            case DuckdbFilesystemDatabase(path, read_only):
                self._conn = duckdb.connect(path, read_only, config=config.to_config_dict())
            case other:
                raise ValueError(f'Unsupported database type: {other}')
        self._conn_lock = threading.Lock()
        self._databases = {main_database.default_name: main_database}
        self._main_database = main_database
        _logger.debug(f'Connected to {main_database} with config {config.to_config_dict()}')

    def databases(self) -> Mapping[str, DuckdbDatabase]:
        """Return all databases attached to this manager, by database name."""
        return dict(self._databases)

    def attach(self, db: DuckdbDatabase, name: str | None = None) -> None:
        """Attach a database.

        Args:
            db: The database to attach.
            name: The name under which to attach the database. If None, the duckdb default is used.
        """
        if name is None:
            name = db.default_name
        if name in self._databases:
            raise ValueError(f'A database with the same name ({name}) is already attached.')

        options = []
        if isinstance(db, DuckdbFilesystemDatabase) and db.read_only:
            options.append('READ_ONLY')
        options_str = '' if not options else '(' + ', '.join(options) + ')' # empty '()' is invalid
        target = db.path if isinstance(db, DuckdbFilesystemDatabase) else ':memory:'
        with self._conn_lock:
            self._conn.execute(f'''ATTACH DATABASE '{target}' AS "{name}" {options_str}''')
            self._databases[name] = db

    def detach(self, name: str) -> None:
        if name == self._main_database.default_name:
            raise ValueError(f'Cannot detach the main database ({name}).')
        with self._conn_lock:
            self._conn.execute(f'DETACH DATABASE "{name}"')
            del self._databases[name]

    def cursor(self) -> duckdb.DuckDBPyConnection:
        """A new cursor on the managed connection. The caller closes it; closing it leaves the connection open."""
        with self._conn_lock:
            return self._conn.cursor() # Not sure if .cursor() is threadsafe, better not risk it

    def close(self) -> None:
        with self._conn_lock:
            self._conn.close()

    # Convenience methods

    @staticmethod
    def in_memory(config: DuckdbConfig = DuckdbConfig()) -> DuckdbManager:
        return DuckdbManager(DuckdbInMemoryDatabase(), config)

    @staticmethod
    def on_disk(path: Path, read_only: bool = False,
                config: DuckdbConfig = DuckdbConfig()) -> DuckdbManager:
        return DuckdbManager(DuckdbFilesystemDatabase(path, read_only), config)
