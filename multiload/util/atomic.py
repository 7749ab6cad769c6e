from threading import Lock


class AtomicInt:
    """A counter that can be shared between threads, e.g. by sessions forked for concurrent loading."""

    def __init__(self, value: int = 0):
        self.__value = value
        self.__lock = Lock()

    # Get is already atomic under GIL semantics, supposedly: https://docs.python.org/3/faq/library.html#what-kinds-of-global-value-mutation-are-thread-safe
    # But relying on the GIL (free-threaded builds exist now) scares me, so I take the lock anyway.

    def get(self) -> int:
        with self.__lock:
            return self.__value

    def inc_and_get(self, diff: int = 1) -> int:
        with self.__lock:
            self.__value += diff
            return self.__value

    def __repr__(self) -> str:
        return f'AtomicInt({self.get()})'
