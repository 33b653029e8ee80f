"""Engine, session factory and unit-of-work helpers."""
from contextlib import contextmanager
from typing import Generator, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from core.config import settings


class Base(DeclarativeBase):
    pass


ModelT = TypeVar("ModelT", bound=Base)


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Engine for ``url``; SQLite gets foreign keys on and a shared in-memory connection."""
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if ":memory:" in url else None,
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    # PostgreSQL and other servers: row locks are real here
    return create_engine(
        url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    # Objects stay readable after commit; services return them to the API layer
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


engine = create_db_engine(settings.DATABASE_URL, echo=settings.SQLALCHEMY_ECHO)
SessionLocal = create_session_factory(engine)


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session() -> Generator:
    """Session for code outside a request (Celery tasks)."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a unit of work on an existing session: commit on success, roll back on error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def get_locked(db: Session, model: type[ModelT], ident: int) -> Optional[ModelT]:
    """Load a row by primary key holding a row lock for the rest of the transaction.

    SQLite has no row locks; the dialect drops FOR UPDATE and the optimistic
    version columns on the models catch concurrent writers instead.
    """
    return db.query(model).populate_existing().filter(model.id == ident).with_for_update().one_or_none()
