"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the shop commerce core.

Two store flavors are supported:
- PostgreSQL: row-level locks (FOR UPDATE / SKIP LOCKED) with per-transaction
  statement and lock timeouts.
- SQLite: every transaction starts with BEGIN IMMEDIATE, taking the database
  write lock up front so concurrent writers serialize instead of computing
  from stale reads.
"""

import logging
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def is_postgres(bind) -> bool:
    """True when the bind (engine, connection or session) talks to PostgreSQL"""
    if isinstance(bind, Session):
        bind = bind.get_bind()
    return bind.dialect.name == "postgresql"


def _install_dialect_hooks(new_engine: Engine) -> None:
    timeout_seconds = Config.TRANSACTION_TIMEOUT_SECONDS

    if new_engine.dialect.name == "sqlite":
        @event.listens_for(new_engine, "connect")
        def _sqlite_on_connect(dbapi_connection, connection_record):
            # Hand transaction control to SQLAlchemy so BEGIN IMMEDIATE is ours to emit
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={timeout_seconds * 1000}")
            cursor.close()

        @event.listens_for(new_engine, "begin")
        def _sqlite_on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    elif new_engine.dialect.name == "postgresql":
        @event.listens_for(new_engine, "begin")
        def _postgres_on_begin(conn):
            conn.exec_driver_sql(f"SET LOCAL statement_timeout = '{timeout_seconds}s'")
            conn.exec_driver_sql(f"SET LOCAL lock_timeout = '{timeout_seconds}s'")


def build_engine(database_url: str) -> Engine:
    """Create an engine with the locking hooks for its dialect"""
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if is_sqlite_url(database_url):
        new_engine = create_engine(
            database_url,
            connect_args={
                "check_same_thread": False,
                "timeout": Config.TRANSACTION_TIMEOUT_SECONDS,
            },
            echo=False,
        )
    else:
        new_engine = create_engine(
            database_url,
            pool_size=Config.DATABASE_POOL_SIZE,
            max_overflow=Config.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,
            echo=False,
        )

    _install_dialect_hooks(new_engine)
    return new_engine


engine = build_engine(Config.DATABASE_URL)

# Session factory; expire_on_commit=False so committed rows stay readable by callers
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


def configure_engine(database_url: str) -> Engine:
    """Rebind the process-wide engine and session factory (startup and tests)"""
    global engine
    old_engine = engine
    engine = build_engine(database_url)
    SessionLocal.configure(bind=engine)
    old_engine.dispose()
    logger.info(f"🔌 Database engine configured for dialect '{engine.dialect.name}'")
    return engine


def get_engine() -> Engine:
    return engine


def create_tables() -> bool:
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info(f"✅ Database schema verified: {len(Base.metadata.tables)} tables available")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


def test_connection() -> bool:
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
