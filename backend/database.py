"""
Database engine and session management
Sessions are short-lived units of work; no transaction spans an LLM call
"""

from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator, List, Optional

import structlog
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from db_models import Base

logger = structlog.get_logger()


def engine_options(db_url: str, settings) -> dict:
    """Engine kwargs per backend; every statement gets a bounded wait"""
    engine_kwargs = {
        'echo': settings.debug and settings.environment != 'test',
        'pool_pre_ping': True,
    }

    if db_url.startswith('sqlite'):
        # SQLite has no statement timeout; bound the wait for the write lock instead
        engine_kwargs['connect_args'] = {
            'check_same_thread': False,
            'timeout': settings.database_statement_timeout,
        }
        # In-memory databases must share one connection across sessions
        if ':memory:' in db_url or db_url in ('sqlite://', 'sqlite:///'):
            engine_kwargs['poolclass'] = StaticPool
    else:
        engine_kwargs.update({
            'pool_size': settings.database_pool_size,
            'max_overflow': settings.database_max_overflow,
            'pool_timeout': settings.database_pool_timeout,
            'pool_recycle': 300,
            'connect_args': {
                'options': f"-c statement_timeout={settings.database_statement_timeout * 1000}"
            },
        })
    return engine_kwargs


def create_database_engine(url: Optional[str] = None) -> Engine:
    """Create database engine with per-environment pool configuration"""
    settings = get_settings()
    db_url = url or settings.database_url

    engine = create_engine(db_url, **engine_options(db_url, settings))

    if db_url.startswith('sqlite'):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Enforce foreign keys on SQLite"""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    # Log without credentials
    safe_url = db_url.split('@')[-1] if '@' in db_url else db_url
    logger.info("database_engine_created", url=safe_url)
    return engine


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_database_engine()


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False
    )


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return create_session_factory(get_engine())


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Wrap a unit of work in a transaction: commit on success, rollback on error"""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.warning("transaction_rolled_back", error=str(e))
        raise
    finally:
        session.close()


def init_database(engine: Optional[Engine] = None) -> List[str]:
    """Create all tables and return their names"""
    target_engine = engine or get_engine()
    Base.metadata.create_all(bind=target_engine)
    tables = sorted(inspect(target_engine).get_table_names())
    logger.info("database_tables_initialized", tables=tables)
    return tables


def check_database_health(engine: Optional[Engine] = None) -> bool:
    """Check database connectivity"""
    target_engine = engine or get_engine()
    try:
        with target_engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return False
