from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from cohortlab.core.settings import config_settings


def build_engine(database_url: str) -> Engine:
    """
    Creates the SQLAlchemy engine backing the store.

    SQLite needs two adjustments to behave like a shared store under
    concurrent admissions: connections are usable across threads, and every
    transaction starts with BEGIN IMMEDIATE so writers queue on the database
    lock (bounded by the busy timeout) instead of failing on lock upgrade.
    """
    is_sqlite = database_url.startswith("sqlite")

    engine = create_engine(
        database_url,
        connect_args=(
            {
                "check_same_thread": False,
                "timeout": config_settings.SQLITE_BUSY_TIMEOUT_SEC,
            }
            if is_sqlite
            else {}
        ),
    )

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # pysqlite's own BEGIN handling is replaced by the "begin" hook below
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    # Records handed out by repositories outlive their session, so they must
    # not be expired on commit.
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
    )


engine = build_engine(config_settings.DATABASE_URL)

SessionLocal = build_session_factory(engine)


class Store:
    """
    Unit-of-work wrapper around a session factory.

    Each ``session()`` block is one transaction: committed when the block
    exits normally, rolled back when it raises. Blocks must not be nested on
    the same thread.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
