from collections.abc import MutableMapping
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database backing the sync server.

    Idempotency keys are kept per scope (a pair code) so they can be
    dropped together with the record they guard.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}
        self._processed: dict[str, set[str]] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)

    def all(self) -> list[V]:
        return list(self._store.values())

    def items(self) -> list[tuple[K, V]]:
        return list(self._store.items())

    def __len__(self) -> int:
        return len(self._store)

    def mark_processed_if_new(self, scope: str, idempotency_key: str) -> bool:
        """
        Record an idempotency key. Returns True the first time a key is
        seen in `scope`, False for every replay. No await between check
        and set.
        """
        seen = self._processed.setdefault(scope, set())
        if idempotency_key in seen:
            return False
        seen.add(idempotency_key)
        return True

    def processed_keys(self, scope: str) -> frozenset[str]:
        return frozenset(self._processed.get(scope, ()))

    def forget_processed(self, scope: str) -> None:
        self._processed.pop(scope, None)
