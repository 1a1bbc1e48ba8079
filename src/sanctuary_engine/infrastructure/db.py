from __future__ import annotations
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sanctuary_engine.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    return get_settings().database_url


def _make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are mutated from API threads, timers and sweeps.
        connect_args["check_same_thread"] = False
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


engine = _make_engine(_dsn())
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_engine(e):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_session_factory():
    """Return the current sessionmaker (honours ``override_engine``)."""
    return SessionLocal


def create_all():
    from sanctuary_engine.models import tables  # noqa: F401 - register mappers
    from sanctuary_engine.infrastructure import idempotency  # noqa: F401
    Base.metadata.create_all(engine)


def healthcheck() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
        return True
