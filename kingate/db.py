"""Relational store: engine, session factory and the FastAPI session dependency."""
import contextlib
import os
import logging
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from .models import Base

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get(
    "DATABASE_URL", f"sqlite:///{Path(__file__).resolve().parent.parent / 'kingate.db'}"
)
_engine = None
_SessionLocal = None


def make_engine(url: str) -> Engine:
    """Create an engine; SQLite connections are shared across request threads."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, connect_args=connect_args)


def init_db(engine: Engine):
    """Create any missing tables."""
    Base.metadata.create_all(bind=engine)
    logger.info("Schema ready on %s", engine.url.render_as_string(hide_password=True))


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(DATABASE_URL)
        init_db(_engine)
    return _engine


def get_sessionmaker() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=get_engine())
    return _SessionLocal


def get_db():
    db: Session = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()


@contextlib.contextmanager
def transaction(db: Session):
    """Commit on success; roll back and re-raise on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
