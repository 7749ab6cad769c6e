from datetime import timedelta
from typing import Any

import cattrs
from attrs import field, frozen, validators

from multiload.core import default_chunk_size, default_fetch_batch_size


def _timedelta_or_none(value: timedelta | float | None) -> timedelta | None:
    match value:
        case None | timedelta(): return value
        case int() | float(): return timedelta(seconds=value)
        case other: raise TypeError(f'Expected a timedelta or a number of seconds, got {other!r}')


@frozen
class LoaderConfig:
    """Settings shared by all loads through one loader.

    Args:
        chunk_size: number of keys bound into each bulk fetch. Every fetch binds exactly this many keys
                    (padding with NULLs), so changing it creates a new statement.
        fetch_batch_size: number of result rows read from the cursor at a time.
        statement_cache_size: maximum number of statements kept by a session's statement cache.
        default_timeout: timeout for each bulk fetch, unless overridden per load. None means no timeout.
    """
    chunk_size: int = field(default=default_chunk_size, validator=validators.ge(1))
    fetch_batch_size: int = field(default=default_fetch_batch_size, validator=validators.ge(1))
    statement_cache_size: int = field(default=32, validator=validators.ge(0))
    default_timeout: timedelta | None = field(default=None, converter=_timedelta_or_none)

    def to_dict(self) -> dict[str, Any]:
        converter = cattrs.Converter()
        converter.register_unstructure_hook(timedelta, lambda td: td.total_seconds())
        return converter.unstructure(self)
