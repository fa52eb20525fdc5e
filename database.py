import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeout
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from config import get_settings
from errors import StoreUnavailable

logger = logging.getLogger(__name__)

# Raised by the driver or the pool when the database can't be reached in time.
STORE_FAILURES = (OperationalError, InterfaceError, PoolTimeout)


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def driver_connect_args(
    url: str, timeout_secs: float = 5, ssl: bool = False, ssl_ca: Optional[str] = None
) -> dict[str, object]:
    connect_args: dict[str, object] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_secs
    elif url.startswith("mysql"):
        seconds = max(1, int(timeout_secs))
        connect_args.update(
            connect_timeout=seconds, read_timeout=seconds, write_timeout=seconds
        )
        if ssl:
            # without a CA bundle the server certificate is not verified
            connect_args["ssl"] = {"ca": ssl_ca} if ssl_ca else {"check_hostname": False}
    return connect_args


def create_db_engine(
    url: str,
    timeout_secs: float = 5,
    ssl: bool = False,
    ssl_ca: Optional[str] = None,
    **kwargs,
) -> Engine:
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_timeout", timeout_secs)

    connect_args = driver_connect_args(url, timeout_secs, ssl, ssl_ca)
    eng = create_engine(url, connect_args=connect_args, **kwargs)
    if url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


settings = get_settings()
engine = create_db_engine(
    settings.database_url, settings.db_timeout_secs, settings.db_ssl, settings.db_ssl_ca
)
SessionLocal = sessionmaker(autoflush=False, bind=engine)
Base = declarative_base()


def init_db(bind: Engine | None = None) -> None:
    import models  # noqa: F401  registers the tables on Base.metadata

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a unit of work as one database transaction.

    Commits when the block finishes, rolls back on any error. Connectivity and
    timeout failures come out as StoreUnavailable.
    """
    try:
        yield db
        db.commit()
    except STORE_FAILURES as exc:
        db.rollback()
        logger.exception("Data store failure during write")
        raise StoreUnavailable() from exc
    except Exception:
        db.rollback()
        raise
