# calmirror/storage/db.py
from sqlalchemy import event
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models.calendar  # noqa: F401
import models.event  # noqa: F401
import models.sync_queue  # noqa: F401
from storage import migrations


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def make_engine(url: str):
    """Create a SQLite engine with foreign keys and WAL journaling enabled.

    In-memory databases share one connection so every thread sees the same data.
    """

    if url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(url, echo=False, connect_args={"check_same_thread": False})
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


_engine = make_engine(f"sqlite:///{DB_PATH.as_posix()}")


def init_db(engine=None):
    target = engine or _engine
    if target is _engine:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(target)
    migrations.run_all(target)


def get_engine():
    return _engine


def get_session() -> Session:
    return Session(_engine, expire_on_commit=False)
