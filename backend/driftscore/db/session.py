"""
DriftScore - Database Session Management
Sync SQLAlchemy engine and sessions for the SQL store.
Same code works on Postgres and a local SQLite file.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from driftscore.models import Base


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Engine for the given URL. SQLite connections are shared across detection workers."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _serialize_sqlite_writers(engine)
        return engine
    return create_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def _serialize_sqlite_writers(engine: Engine) -> None:
    # Take the write lock when the transaction starts; a deferred transaction
    # that upgrades from a read lock fails with SQLITE_BUSY instead of waiting.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables (dev mode). Use Alembic in production."""
    Base.metadata.create_all(engine)
