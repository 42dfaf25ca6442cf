from collections.abc import Callable, Iterable, Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from crewcall.errors import PersistenceError

K = TypeVar("K")
V = TypeVar("V")
T = TypeVar("T")


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database.

    Keys are ``"<kind>:<id>"`` strings by convention. Every operation fails
    with PersistenceError while the database is closed.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def _ensure_open(self) -> None:
        if not self._open:
            raise PersistenceError("database is not available")

    def put(self, key: K, value: V) -> None:
        self._ensure_open()
        self._store[key] = value

    def get(self, key: K) -> V | None:
        self._ensure_open()
        return self._store.get(key)

    def delete(self, key: K) -> None:
        self._ensure_open()
        self._store.pop(key, None)

    def all(self) -> list[V]:
        self._ensure_open()
        return list(self._store.values())

    def of_type(self, cls: type[T]) -> list[T]:
        return [v for v in self.all() if isinstance(v, cls)]

    def clear(self) -> None:
        self._ensure_open()
        self._store.clear()

    def __iter__(self) -> Iterator[V]:
        self._ensure_open()
        return iter(list(self._store.values()))

    def __len__(self) -> int:
        return len(self._store)

    def transition_if_status(
        self,
        key: K,
        allowed_from: Iterable[Any],
        changes: dict[str, Any],
    ) -> tuple[bool, V | None]:
        """
        Atomically apply ``changes`` if the stored value's status is one of
        ``allowed_from``.
        Returns (True, updated) on success, (False, current) otherwise.
        """
        self._ensure_open()
        value = self._store.get(key)
        if value is None:
            return False, None
        # no await between the check and the write, so this cannot interleave
        if getattr(value, "status", None) not in set(allowed_from):
            return False, value
        updated = value.model_copy(update=changes)
        self._store[key] = updated
        return True, updated

    def append_if_status(
        self,
        key: K,
        field: str,
        item: Any,
        allowed_from: Iterable[Any],
    ) -> tuple[bool, V | None]:
        """
        Atomically append ``item`` to a list field (once) if status allows it.
        """
        self._ensure_open()
        value = self._store.get(key)
        if value is None:
            return False, None
        if getattr(value, "status", None) not in set(allowed_from):
            return False, value
        items = list(getattr(value, field))
        if item not in items:
            items.append(item)
            value = value.model_copy(update={field: items})
            self._store[key] = value
        return True, value

    def delete_where(self, predicate: Callable[[V], bool]) -> list[V]:
        self._ensure_open()
        doomed = [(k, v) for k, v in self._store.items() if predicate(v)]
        for k, _ in doomed:
            del self._store[k]
        return [v for _, v in doomed]


@contextmanager
def opened(db: InMemoryKeyValueDatabase) -> Iterator[InMemoryKeyValueDatabase]:
    """Hold the database open for the duration of the block."""
    db.open()
    try:
        yield db
    finally:
        db.close()
