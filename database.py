from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def create_db_engine(database_url: str, **kwargs) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, **kwargs)

    eng = create_engine(url, connect_args={"check_same_thread": False}, **kwargs)
    # WAL needs a file; in-memory databases keep the default journal.
    in_memory = url.database in (None, "", ":memory:")
    event.listen(eng, "connect", _sqlite_pragmas(wal=not in_memory))
    return eng


def _sqlite_pragmas(wal: bool):
    def on_connect(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    return on_connect


engine = create_db_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run a block as one unit of work on ``session``.

    The outermost block commits on success and rolls back on any exception.
    Nested blocks join the enclosing unit, so a service calling another
    service never commits half of a multi-step balance change.
    """
    depth = session.info.get("atomic_depth", 0)
    session.info["atomic_depth"] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except Exception:
        if depth == 0:
            session.rollback()
        raise
    finally:
        session.info["atomic_depth"] = depth
