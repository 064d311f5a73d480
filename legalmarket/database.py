import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from legalmarket.config import settings
from legalmarket.errors import Conflict

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    url = url or settings.DATABASE_URL
    echo = settings.DB_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # One shared connection so every session sees the same in-memory database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        pool_pre_ping=True,  # Enables pessimistic disconnect handling
        pool_recycle=300,    # Recycle connections every 5 minutes
        echo=echo,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables known to the model registry."""
    import legalmarket.models  # noqa: F401  registers the mappers on Base

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    db = factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Run a block as one unit of work.

    Commits when the block finishes, rolls back on any exception. Unique
    constraint violations and optimistic version mismatches are reported as
    Conflict so callers can retry.
    """
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning(f"Write rejected by a constraint: {exc.orig}")
        raise Conflict("Concurrent write collided with an existing row", constraint=str(exc.orig)) from exc
    except StaleDataError as exc:
        db.rollback()
        logger.warning(f"Optimistic version check failed: {exc}")
        raise Conflict("Row was modified by a concurrent transaction") from exc
    except BaseException:
        db.rollback()
        raise
