from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from inbox_recon.config import settings


def create_db_engine(database_url: str | None = None):
    url = database_url or settings.database_url
    connect_args = {}
    if url.startswith("sqlite"):
        # sessions on other threads wait on the write lock instead of failing at once
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, echo=False, future=True, connect_args=connect_args)


def make_session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False, autoflush=False)


ENGINE = create_db_engine()
SessionLocal = make_session_factory(ENGINE)


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None):
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
