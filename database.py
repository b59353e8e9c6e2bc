from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import Settings, get_settings


def engine_options(settings: Settings) -> tuple[dict[str, object], dict[str, object]]:
    """Driver connect args and engine kwargs bounded by ``store_timeout_secs``."""
    timeout = settings.store_timeout_secs
    backend = make_url(settings.database_url).get_backend_name()
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {}
    if backend == "sqlite":
        connect_args["check_same_thread"] = False
        # Seconds to wait on a locked database before raising OperationalError.
        connect_args["timeout"] = timeout
        return connect_args, engine_kwargs

    engine_kwargs["pool_timeout"] = timeout
    engine_kwargs["pool_pre_ping"] = True
    seconds = max(1, int(timeout))
    if backend == "postgresql":
        connect_args["connect_timeout"] = seconds
        connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"
    elif backend in ("mysql", "mariadb"):
        connect_args["connect_timeout"] = seconds
        connect_args["read_timeout"] = seconds
        connect_args["write_timeout"] = seconds
    return connect_args, engine_kwargs


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args, engine_kwargs = engine_options(settings)
    eng = create_engine(
        settings.database_url, connect_args=connect_args, **engine_kwargs
    )
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
