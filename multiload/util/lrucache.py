import threading
from collections import OrderedDict
from collections.abc import Callable, Iterator, MutableMapping
from typing import overload, override

from attrs import field, frozen


@frozen(eq=False, hash=False)
class LRUCache[K, V](MutableMapping[K, V]):
    """A simple LRU cache exposed as a mapping.

    Individual operations are threadsafe, so one instance can be shared by sessions running on different threads.
    """

    maxsize: int
    _cache: OrderedDict[K, V] = field(init=False, factory=OrderedDict)
    _lock: threading.RLock = field(init=False, factory=threading.RLock)

    @override
    def __getitem__(self, key: K) -> V:
        with self._lock:
            if key not in self._cache:
                raise KeyError(key)
            self._cache.move_to_end(key)
            return self._cache[key]

    @override
    def __setitem__(self, key: K, value: V) -> None:
        with self._lock:
            if key in self._cache:
                self._cache[key] = value
                self._cache.move_to_end(key)
            else:
                self._cache[key] = value
                if len(self._cache) > self.maxsize:
                    self._cache.popitem(last=False)

    @override
    def __delitem__(self, key: K) -> None:
        with self._lock:
            del self._cache[key]

    @override
    def __iter__(self) -> Iterator[K]:
        with self._lock:
            return iter(list(self._cache))

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    # Have to redeclare all overloads when overriding, or mypy complains :-(

    @overload
    def get(self, key: K) -> V | None: ...

    @overload
    def get[T](self, key: K, default: T) -> V | T: ...

    @override
    def get[T](self, key: K, default: V | T | None = None) -> V | T | None:
        try:
            return self[key]
        except KeyError:
            return default

    def get_or_create(self, key: K, factory: Callable[[], V]) -> tuple[V, bool]:
        """Return the cached value, or create, store and return a new one.

        The second element of the result is True if the value was created by this call.
        The factory is called while holding the lock, so it is called at most once per missing key.
        """
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                return self._cache[key], False
            value = factory()
            self[key] = value
            return value, True

    @override
    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
