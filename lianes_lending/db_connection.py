import os
import urllib.parse
import warnings

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from .core.config import PROJECT_ROOT, _ensure_env_loaded


def _sqlite_begin_immediate(engine: Engine) -> None:
    """Let commits take the SQLite write lock up front.

    Connections opened with the ``immediate`` execution option start with
    BEGIN IMMEDIATE so two commits cannot validate against the same state;
    plain reads keep a deferred BEGIN.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        mode = "IMMEDIATE" if conn.get_execution_options().get("immediate") else "DEFERRED"
        conn.exec_driver_sql(f"BEGIN {mode}")


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"timeout": 5, "check_same_thread": False})
        _sqlite_begin_immediate(engine)
        return engine
    return create_engine(url, isolation_level="SERIALIZABLE", pool_pre_ping=True)


def get_engine(url: str | None = None) -> Engine:
    """Return a SQLAlchemy Engine.

    Resolution order:
      1. explicit ``url`` argument
      2. `DATABASE_URL` environment variable (recommended for production)
      3. Individual env vars: `DB_USER`, `DB_PASSWORD`, `DB_HOST`, `DB_PORT`, `DB_NAME`
      4. Fallback to local SQLite file `data/lianes_lending.db` (development convenience)
    """
    if url:
        return _build_engine(url)

    _ensure_env_loaded()

    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return _build_engine(database_url)

    user = os.environ.get("DB_USER")
    password = os.environ.get("DB_PASSWORD")
    host = os.environ.get("DB_HOST")
    port = os.environ.get("DB_PORT")
    dbname = os.environ.get("DB_NAME")

    if user and dbname and host:
        pwd = urllib.parse.quote_plus(password) if password else ""
        port_part = f":{port}" if port else ""
        return _build_engine(f"mysql+pymysql://{user}:{pwd}@{host}{port_part}/{dbname}")

    db_dir = PROJECT_ROOT / "data"
    db_dir.mkdir(exist_ok=True)
    db_path = db_dir / "lianes_lending.db"
    warnings.warn(
        "DATABASE_URL not set and DB env vars not found - falling back to local sqlite at: %s" % db_path
    )
    return _build_engine(f"sqlite:///{db_path}")
