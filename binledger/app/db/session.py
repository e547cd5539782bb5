from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from binledger.app.core.config import settings


def make_engine(database_url: str, *, busy_timeout: float | None = None) -> Engine:
    """
    Postgres : verrouillage ligne via SELECT ... FOR UPDATE.
    SQLite ignore FOR UPDATE : chaque transaction démarre en BEGIN IMMEDIATE,
    ce qui sérialise les unités de travail (verrou d'écriture base entière).
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    timeout = settings.sqlite_busy_timeout_seconds if busy_timeout is None else busy_timeout
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": timeout},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        # laisse SQLAlchemy émettre BEGIN lui-même (requis aussi pour SAVEPOINT)
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)
