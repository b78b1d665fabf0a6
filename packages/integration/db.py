import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# SQLite by default so dev and tests run without Postgres
_DEFAULT_URL = "sqlite:///./dev.db"
_ENGINE = None
_ENGINE_URL = None
_SESSIONMAKER = None


def _current_url() -> str:
    return os.getenv("DATABASE_URL", _DEFAULT_URL)


def get_engine():
    global _ENGINE, _ENGINE_URL, _SESSIONMAKER
    url = _current_url()
    if _ENGINE is None or _ENGINE_URL != url:
        kwargs = {"echo": False, "future": True, "pool_pre_ping": True}
        if url.startswith("sqlite"):
            # FastAPI runs sync handlers in a threadpool
            kwargs["connect_args"] = {"check_same_thread": False}
        if _ENGINE is not None:
            _ENGINE.dispose()
        _ENGINE = create_engine(url, **kwargs)
        _ENGINE_URL = url
        _SESSIONMAKER = sessionmaker(bind=_ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)
    return _ENGINE


class _EngineProxy:
    def __getattr__(self, name):
        return getattr(get_engine(), name)

    def __repr__(self) -> str:
        return f"<EngineProxy to {get_engine()!r}>"


# Follows DATABASE_URL changes between tests
engine = _EngineProxy()


def SessionLocal():
    get_engine()
    return _SESSIONMAKER()


@contextmanager
def session_scope(factory=None):
    """Commit on success, roll back and re-raise on any error."""
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_schema():
    """Create tables directly; dev and tests only, deployments run alembic."""
    from packages.integration.models import Base

    Base.metadata.create_all(bind=get_engine())
