from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from intel.config import get_settings
from intel.models import Base

SessionFactory = Callable[[], Session]

_lock = threading.Lock()
_engine = None
_SessionLocal: sessionmaker | None = None
_current_db_path: Path | None = None


def make_session_factory(url: str) -> sessionmaker:
    """Create an engine for *url*, ensure the schema exists, return its sessionmaker."""
    engine = create_engine(url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal, _current_db_path
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            settings = get_settings()
            settings.ensure_directories()
            db_path, url = settings.database_path, settings.database_url
        else:
            db_path = Path(db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{db_path}"
        _SessionLocal = make_session_factory(url)
        _engine = _SessionLocal.kw["bind"]
        _current_db_path = db_path


def get_session_factory() -> sessionmaker:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope(factory: SessionFactory | None = None) -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (repository, dossier provider, scripts)::

        with session_scope(factory) as session:
            ...
    """
    session = factory() if factory is not None else get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_db_path() -> Path | None:
    return _current_db_path
