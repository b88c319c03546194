import copy
import threading

from .base import DocumentStore, Row, Transaction


class InMemoryDocumentStore(DocumentStore):
    """Reference store backed by a dict, for tests and local runs.

    Each instance is independent; build one per test or per app.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._docs: dict[str, tuple[dict, int]] = {}
        self._lock = threading.RLock()

    def _read(self, path: str) -> tuple[dict | None, int]:
        with self._lock:
            if path not in self._docs:
                return None, 0
            data, version = self._docs[path]
            return copy.deepcopy(data), version

    def _scan(self, collection: str) -> list[Row]:
        prefix = collection + "/"
        with self._lock:
            return [
                (path, copy.deepcopy(data), version)
                for path, (data, version) in self._docs.items()
                if path.startswith(prefix)
            ]

    def _current_version(self, path: str) -> int:
        entry = self._docs.get(path)
        return entry[1] if entry else 0

    def _commit(self, txn: Transaction) -> dict[str, int]:
        with self._lock:
            txn.validate(self._current_version, self._scan)
            versions = {}
            for path, data in txn.writes.items():
                versions[path] = self._current_version(path) + 1
                self._docs[path] = (copy.deepcopy(data), versions[path])
            return versions
