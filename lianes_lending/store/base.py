"""Transactional key-document store.

Documents live at ``collection/doc_id`` and are flat JSON-compatible dicts.
Transactions use optimistic concurrency: reads record the version they saw,
writes are buffered, and commit re-validates every read (and every query)
before applying the writes atomically.  A failed validation raises
``Conflict`` and ``DocumentStore.run_transaction`` retries the whole
function with fresh reads.
"""

import copy
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Iterator, TypeVar

from ..errors import Conflict, NotFound, TransientFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (path, data, version) as returned by a backend scan
Row = tuple[str, dict, int]


@dataclass(frozen=True)
class DocumentRef:
    collection: str
    doc_id: str

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.doc_id}"

    @classmethod
    def from_path(cls, path: str) -> "DocumentRef":
        collection, doc_id = path.split("/", 1)
        return cls(collection, doc_id)


@dataclass(frozen=True)
class DocumentSnapshot:
    ref: DocumentRef
    data: dict | None
    version: int

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass(frozen=True)
class QuerySnapshot:
    collection: str
    documents: tuple[tuple[DocumentRef, dict], ...]
    versions: dict[str, int]
    version: int = 0


def matches(data: dict, where: dict[str, Any]) -> bool:
    """Equality filter; None matches a missing key, a collection means "in"."""
    for field, expected in where.items():
        value = data.get(field)
        if isinstance(expected, (tuple, list, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


@dataclass
class _QueryRecord:
    collection: str
    where: dict[str, Any]
    seen: dict[str, int]


class Transaction:
    """Handle passed to the function given to ``run_transaction``."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._reads: dict[str, int] = {}
        self._queries: list[_QueryRecord] = []
        self._writes: dict[str, dict] = {}

    def get(self, ref: DocumentRef) -> dict | None:
        if ref.path in self._writes:
            return copy.deepcopy(self._writes[ref.path])
        data, version = self._store._read(ref.path)
        self._reads.setdefault(ref.path, version)
        return copy.deepcopy(data)

    def query(self, collection: str, **where: Any) -> list[tuple[DocumentRef, dict]]:
        rows = [row for row in self._store._scan(collection) if matches(row[1], where)]
        self._queries.append(_QueryRecord(collection, dict(where), {path: version for path, _, version in rows}))

        results = {path: data for path, data, _ in rows}
        # overlay this transaction's own writes
        prefix = collection + "/"
        for path, data in self._writes.items():
            if not path.startswith(prefix):
                continue
            if matches(data, where):
                results[path] = data
            else:
                results.pop(path, None)
        return [(DocumentRef.from_path(path), copy.deepcopy(data)) for path, data in results.items()]

    def set(self, ref: DocumentRef, data: dict) -> None:
        self._writes[ref.path] = copy.deepcopy(dict(data))

    def update(self, ref: DocumentRef, partial: dict) -> None:
        current = self.get(ref)
        if current is None:
            raise NotFound(f"Document {ref.path} does not exist", ref.doc_id)
        current.update(copy.deepcopy(partial))
        self._writes[ref.path] = current

    @property
    def writes(self) -> dict[str, dict]:
        return self._writes

    def validate(self, current_version: Callable[[str], int], scan: Callable[[str], Iterable[Row]]) -> None:
        """Raise Conflict if anything read by this transaction has changed.

        Backends call this while holding whatever lock makes validation and
        the following writes atomic.
        """
        for path, version in self._reads.items():
            if current_version(path) != version:
                raise Conflict(f"Document {path} changed during transaction", path)
        scans: dict[str, list[Row]] = {}
        for record in self._queries:
            if record.collection not in scans:
                scans[record.collection] = list(scan(record.collection))
            now_seen = {
                path: version for path, data, version in scans[record.collection] if matches(data, record.where)
            }
            if now_seen != record.seen:
                raise Conflict(f"Query on {record.collection} changed during transaction", record.collection)


class Subscription:
    """Live view over the store.

    Yields snapshots in increasing version order.  Commits made through the
    same store are pushed; anything else is picked up by polling.  At most
    ``max_pending`` pushed snapshots are buffered; a subscriber that falls
    further behind loses the oldest ones and catches up by polling.

    Subclasses implement ``_poll`` and ``_accept``.
    """

    def __init__(
        self,
        key: str,
        on_cancel: Callable[["Subscription"], None],
        poll_interval: float = 1.0,
        max_pending: int = 100,
    ):
        self.key = key
        self._on_cancel = on_cancel
        self._poll_interval = poll_interval
        # None entries mean "something changed, poll again"
        self._pending: deque = deque(maxlen=max_pending)
        self._arrived = threading.Condition()
        self._cancelled = threading.Event()

    def _poll(self) -> Any:
        raise NotImplementedError

    def _accept(self, snapshot: Any) -> Any | None:
        """Return what to hand out for ``snapshot``, or None if it is not newer."""
        raise NotImplementedError

    def push(self, snapshot: Any = None) -> None:
        with self._arrived:
            if self._cancelled.is_set():
                return
            if snapshot is None and self._pending and self._pending[-1] is None:
                return
            self._pending.append(snapshot)
            self._arrived.notify_all()

    def next(self, timeout: float | None = None) -> Any | None:
        """Return the next newer snapshot, or None if none arrives in time."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._cancelled.is_set():
            wait = self._poll_interval
            if deadline is not None:
                wait = min(wait, max(deadline - time.monotonic(), 0))
            with self._arrived:
                if not self._pending:
                    self._arrived.wait(wait)
                snapshot = self._pending.popleft() if self._pending else None
            if self._cancelled.is_set():
                break
            if snapshot is None:
                snapshot = self._poll()
            accepted = self._accept(snapshot)
            if accepted is not None:
                return accepted
            if deadline is not None and time.monotonic() >= deadline:
                return None
        return None

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        with self._arrived:
            self._cancelled.set()
            self._pending.clear()
            self._arrived.notify_all()
        self._on_cancel(self)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def __iter__(self) -> Iterator[Any]:
        while not self._cancelled.is_set():
            snapshot = self.next()
            if snapshot is not None:
                yield snapshot


class DocumentSubscription(Subscription):
    """Live view of one document, starting with its current snapshot."""

    def __init__(
        self,
        ref: DocumentRef,
        fetch: Callable[[DocumentRef], DocumentSnapshot],
        on_cancel: Callable[[Subscription], None],
        poll_interval: float = 1.0,
        max_pending: int = 100,
    ):
        super().__init__(ref.path, on_cancel, poll_interval, max_pending)
        self.ref = ref
        self._fetch = fetch
        self._last_version = -1
        self._pending.append(self._poll())

    def _poll(self) -> DocumentSnapshot:
        return self._fetch(self.ref)

    def _accept(self, snapshot: DocumentSnapshot) -> DocumentSnapshot | None:
        if snapshot.version <= self._last_version:
            return None
        self._last_version = snapshot.version
        return snapshot


class QuerySubscription(Subscription):
    """Live result of an equality query over one collection.

    A new ``QuerySnapshot`` is produced whenever a document enters or leaves
    the result or a matching document gets a new version.  Snapshot versions
    count those changes for this subscription.
    """

    def __init__(
        self,
        collection: str,
        where: dict[str, Any],
        fetch: Callable[..., QuerySnapshot],
        on_cancel: Callable[[Subscription], None],
        poll_interval: float = 1.0,
        max_pending: int = 100,
    ):
        super().__init__(collection, on_cancel, poll_interval, max_pending)
        self.collection = collection
        self.where = dict(where)
        self._fetch = fetch
        self._seen: dict[str, int] | None = None
        self._sequence = 0
        self._pending.append(self._poll())

    def _poll(self) -> QuerySnapshot:
        return self._fetch(self.collection, **self.where)

    def _accept(self, snapshot: QuerySnapshot) -> QuerySnapshot | None:
        if snapshot.versions == self._seen:
            return None
        self._seen = snapshot.versions
        self._sequence += 1
        return replace(snapshot, version=self._sequence)


class DocumentStore:
    """Base class for store backends.

    Subclasses implement ``_read``, ``_scan`` and ``_commit``.
    """

    def __init__(self, max_retries: int = 5, backoff: float = 0.1, timeout: float = 10.0, poll_interval: float = 1.0):
        self.max_retries = max_retries
        self.backoff = backoff
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._subscriptions_lock = threading.Lock()

    # -- backend hooks ----------------------------------------------------
    def _read(self, path: str) -> tuple[dict | None, int]:
        raise NotImplementedError

    def _scan(self, collection: str) -> list[Row]:
        raise NotImplementedError

    def _commit(self, txn: Transaction) -> dict[str, int]:
        """Validate and apply ``txn``; return the new version of each written path."""
        raise NotImplementedError

    # -- transactions -----------------------------------------------------
    def begin(self) -> Transaction:
        return Transaction(self)

    def commit(self, txn: Transaction) -> None:
        """Apply ``txn`` or raise Conflict; nothing is written on failure."""
        versions = self._commit(txn)
        self._publish(txn.writes, versions)

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        deadline = time.monotonic() + self.timeout
        attempt = 0
        while True:
            if time.monotonic() > deadline:
                logger.warning("Transaction timed out after %d attempt(s)", attempt)
                raise TransientFailure(f"Transaction timed out after {self.timeout}s")
            txn = self.begin()
            try:
                result = fn(txn)
                self.commit(txn)
            except Conflict as exc:
                if attempt >= self.max_retries:
                    logger.warning("Giving up after %d retries: %s", attempt, exc.reason)
                    raise TransientFailure(
                        f"Gave up after {attempt} retries: {exc.reason}", exc.entity_id
                    ) from exc
                delay = self.backoff * (2 ** attempt)
                logger.debug("Conflict on attempt %d (%s); retrying in %.3fs", attempt + 1, exc.reason, delay)
                attempt += 1
                time.sleep(delay)
                continue
            return result

    # -- non-transactional reads -------------------------------------------
    def _read_now(self, path: str) -> tuple[dict | None, int]:
        # outside a transaction nothing retries, so a busy backend is transient
        try:
            return self._read(path)
        except Conflict as exc:
            raise TransientFailure(exc.reason, exc.entity_id) from exc

    def _scan_now(self, collection: str) -> list[Row]:
        try:
            return self._scan(collection)
        except Conflict as exc:
            raise TransientFailure(exc.reason, exc.entity_id) from exc

    def get(self, ref: DocumentRef) -> dict | None:
        data, _ = self._read_now(ref.path)
        return copy.deepcopy(data)

    def query(self, collection: str, **where: Any) -> list[tuple[DocumentRef, dict]]:
        return [
            (DocumentRef.from_path(path), copy.deepcopy(data))
            for path, data, _ in self._scan_now(collection)
            if matches(data, where)
        ]

    # -- subscriptions ----------------------------------------------------
    def snapshot(self, ref: DocumentRef) -> DocumentSnapshot:
        data, version = self._read_now(ref.path)
        return DocumentSnapshot(ref, copy.deepcopy(data), version)

    def query_snapshot(self, collection: str, **where: Any) -> QuerySnapshot:
        rows = sorted((row for row in self._scan_now(collection) if matches(row[1], where)), key=lambda row: row[0])
        return QuerySnapshot(
            collection,
            tuple((DocumentRef.from_path(path), copy.deepcopy(data)) for path, data, _ in rows),
            {path: version for path, _, version in rows},
        )

    def watch(self, ref: DocumentRef) -> DocumentSubscription:
        subscription = DocumentSubscription(ref, self.snapshot, self._unsubscribe, self.poll_interval)
        self._register(subscription)
        return subscription

    def watch_query(self, collection: str, **where: Any) -> QuerySubscription:
        subscription = QuerySubscription(collection, where, self.query_snapshot, self._unsubscribe, self.poll_interval)
        self._register(subscription)
        return subscription

    def _register(self, subscription: Subscription) -> None:
        with self._subscriptions_lock:
            self._subscriptions.setdefault(subscription.key, []).append(subscription)

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._subscriptions_lock:
            subs = self._subscriptions.get(subscription.key, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscriptions.pop(subscription.key, None)

    def _publish(self, writes: dict[str, dict], versions: dict[str, int]) -> None:
        # document subscriptions are keyed by path, query subscriptions by collection
        with self._subscriptions_lock:
            documents = [(path, list(self._subscriptions.get(path, []))) for path in writes]
            collections = {path.split("/", 1)[0] for path in writes}
            queries = [sub for collection in collections for sub in self._subscriptions.get(collection, [])]
        for path, subs in documents:
            for sub in subs:
                sub.push(DocumentSnapshot(sub.ref, copy.deepcopy(writes[path]), versions[path]))
        for sub in queries:
            sub.push()
