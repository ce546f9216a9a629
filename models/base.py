import os
from contextlib import contextmanager

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

# check, unique and index names are spelled out in models/schema.py
NAMING_CONVENTION = {
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    return url


def _sqlite_pragmas(dbapi_conn, _record):
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


def make_engine(url: str, **overrides) -> Engine:
    kwargs = {"pool_pre_ping": True, **overrides}
    if url.startswith("sqlite"):
        # the Flask test client and the orchestrator share one file across threads
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _sqlite_pragmas)
    return engine


_engine: Engine | None = None
_factory: sessionmaker | None = None


def init_engine_and_session() -> tuple[Engine, sessionmaker]:
    """Build the process-wide engine and session factory on first use."""
    global _engine, _factory
    if _engine is None:
        _engine = make_engine(database_url())
        # rows are turned into dicts after commit, keep them loaded
        _factory = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    return _engine, _factory


@contextmanager
def session_scope():
    """One unit of work: commit on success, roll back on any error."""
    _, factory = init_engine_and_session()
    s: Session = factory()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
