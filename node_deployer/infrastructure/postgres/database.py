# node_deployer/infrastructure/postgres/database.py

"""Engine and session factory for the SQL stores."""

import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from node_deployer.config import DeployerSettings, get_settings

logger = logging.getLogger(__name__)

Base = declarative_base()


# ============================================
# Engine
# ============================================
def create_db_engine(
    database_url: Optional[str] = None,
    settings: Optional[DeployerSettings] = None,
) -> Engine:
    """
    Build an engine for ``database_url`` (default: from settings).

    PostgreSQL engines get a bounded connection pool with pre-ping and the
    ``public`` search path. Other backends (SQLite in tests) take the
    driver defaults.
    """
    settings = settings or get_settings()
    url = make_url(database_url or settings.sqlalchemy_url)

    if url.get_backend_name() != "postgresql":
        return create_engine(url, echo=settings.echo_sql)

    engine = create_engine(
        url,
        echo=settings.echo_sql,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )

    @event.listens_for(engine, "connect")
    def set_search_path(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("SET search_path TO public")
        cursor.close()

    logger.info(f"[postgres] engine ready for {url.render_as_string(hide_password=True)}")
    return engine


@lru_cache
def get_engine() -> Engine:
    return create_db_engine()


# ============================================
# Sessions
# ============================================
def get_session_factory(engine_instance: Optional[Engine] = None) -> sessionmaker:
    """
    Session factory injected into every repository.

    Tests pass their own engine; production shares the process-wide one.
    Objects stay usable after commit since repositories map them to domain
    models once the session is closed.
    """
    return sessionmaker(
        bind=engine_instance or get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


# ============================================
# Schema (tests and local runs; production uses Alembic)
# ============================================
def init_db(engine_instance: Optional[Engine] = None) -> None:
    from node_deployer.infrastructure.postgres import models  # noqa: F401  registers tables

    Base.metadata.create_all(bind=engine_instance or get_engine())


def drop_db(engine_instance: Optional[Engine] = None) -> None:
    Base.metadata.drop_all(bind=engine_instance or get_engine())
