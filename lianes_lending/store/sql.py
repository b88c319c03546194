import json
import logging

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from ..errors import Conflict
from .base import DocumentStore, Row, Transaction

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection VARCHAR(64) NOT NULL,
    doc_id VARCHAR(128) NOT NULL,
    data TEXT NOT NULL,
    version INTEGER NOT NULL,
    PRIMARY KEY (collection, doc_id)
)
"""


def _split(path: str) -> dict:
    collection, doc_id = path.split("/", 1)
    return {"collection": collection, "doc_id": doc_id}


class SqlDocumentStore(DocumentStore):
    """Documents kept as JSON rows in a single ``documents`` table."""

    def __init__(self, engine: Engine, **kwargs):
        super().__init__(**kwargs)
        self._engine = engine

    def init_schema(self) -> None:
        with self._engine.connect() as conn:
            with conn.begin():
                conn.execute(text(SCHEMA))

    # -- reads ------------------------------------------------------------
    def _read_in(self, conn: Connection, path: str) -> tuple[dict | None, int]:
        row = conn.execute(
            text("SELECT data, version FROM documents WHERE collection = :collection AND doc_id = :doc_id"),
            _split(path),
        ).mappings().fetchone()
        if row is None:
            return None, 0
        return json.loads(row["data"]), int(row["version"])

    def _scan_in(self, conn: Connection, collection: str) -> list[Row]:
        rows = conn.execute(
            text("SELECT doc_id, data, version FROM documents WHERE collection = :collection"),
            {"collection": collection},
        ).mappings().all()
        return [(f"{collection}/{r['doc_id']}", json.loads(r["data"]), int(r["version"])) for r in rows]

    def _read(self, path: str) -> tuple[dict | None, int]:
        try:
            with self._engine.connect() as conn:
                return self._read_in(conn, path)
        except OperationalError as exc:
            raise Conflict(f"Database busy reading {path}: {exc.orig}", path) from exc

    def _scan(self, collection: str) -> list[Row]:
        try:
            with self._engine.connect() as conn:
                return self._scan_in(conn, collection)
        except OperationalError as exc:
            raise Conflict(f"Database busy reading {collection}: {exc.orig}", collection) from exc

    # -- commit -----------------------------------------------------------
    def _write_in(self, conn: Connection, path: str, data: dict) -> int:
        params = _split(path)
        params["data"] = json.dumps(data, sort_keys=True)
        _, current = self._read_in(conn, path)
        if current == 0:
            conn.execute(
                text(
                    "INSERT INTO documents (collection, doc_id, data, version) "
                    "VALUES (:collection, :doc_id, :data, 1)"
                ),
                params,
            )
            return 1
        params.update({"old": current, "new": current + 1})
        result = conn.execute(
            text(
                "UPDATE documents SET data = :data, version = :new "
                "WHERE collection = :collection AND doc_id = :doc_id AND version = :old"
            ),
            params,
        )
        if result.rowcount != 1:
            raise Conflict(f"Document {path} changed during commit", path)
        return current + 1

    def _commit(self, txn: Transaction) -> dict[str, int]:
        try:
            with self._engine.connect() as conn:
                conn.execution_options(immediate=True)
                with conn.begin():
                    txn.validate(
                        lambda path: self._read_in(conn, path)[1],
                        lambda collection: self._scan_in(conn, collection),
                    )
                    return {path: self._write_in(conn, path, data) for path, data in txn.writes.items()}
        except (OperationalError, IntegrityError) as exc:
            logger.debug("Commit aborted by database: %s", exc.orig)
            raise Conflict(f"Database rejected commit: {exc.orig}") from exc
