import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import Settings
from errors import StoreError

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> Engine:
    url = settings.database_url
    kwargs: dict[str, object] = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": settings.store_timeout_secs,
        }
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_timeout"] = settings.store_timeout_secs
        kwargs["pool_pre_ping"] = True

    eng = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def store_call(
    session: Session, action: str, timeout_secs: Optional[float] = None
) -> Iterator[Session]:
    """Bound a unit of store work by a deadline and translate driver failures.

    Only SQLAlchemy errors are translated; domain errors raised inside the
    block propagate untouched.
    """
    try:
        if timeout_secs and session.get_bind().dialect.name == "postgresql":
            session.execute(
                text(f"SET LOCAL statement_timeout = {int(timeout_secs * 1000)}")
            )
        yield session
    except (OperationalError, PoolTimeoutError) as exc:
        session.rollback()
        logger.error(f"store_call: action={action} retryable=true error={exc}")
        raise StoreError(
            f"Could not {action}", reason="store_unavailable", retryable=True
        ) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"store_call: action={action} retryable=false error={exc}")
        raise StoreError(f"Could not {action}") from exc
