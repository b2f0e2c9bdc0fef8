"""Atomic transaction utilities for balance, inventory and order operations"""

import logging
import time
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Generator, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from utils.commerce_errors import TransientStoreError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def is_transient_store_error(error: Exception) -> bool:
    """Lock timeouts, deadlocks, busy databases and dropped connections"""
    if isinstance(error, OperationalError):
        return True
    return isinstance(error, DBAPIError) and bool(error.connection_invalidated)


@contextmanager
def atomic_transaction() -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    A fresh session is opened, committed on success, rolled back on any error
    and always closed. Code that already holds a session joins it through
    ``require_atomic_transaction(session=...)`` instead of nesting here.
    """
    session = SessionLocal()
    logger.debug("Created new sync session for atomic transaction")
    try:
        yield session
        session.commit()
        logger.debug("Sync atomic transaction committed successfully")
    except Exception as e:
        session.rollback()
        logger.debug(f"Sync transaction rolled back due to error: {e}")
        raise
    finally:
        session.close()


def require_atomic_transaction(func: F) -> F:
    """
    Decorator to ensure function runs within an atomic transaction.

    When the caller passes ``session=...`` the function joins that transaction
    and the caller owns commit and retry. Otherwise the function runs in its own
    transaction; transient store errors roll back and the whole unit is retried
    with exponential backoff before surfacing as TransientStoreError.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        if kwargs.get("session") is not None:
            return func(*args, **kwargs)

        max_retries = Config.TRANSACTION_MAX_RETRIES
        for attempt in range(max_retries + 1):
            try:
                with atomic_transaction() as new_session:
                    kwargs["session"] = new_session
                    return func(*args, **kwargs)
            except (OperationalError, DBAPIError) as e:
                if not is_transient_store_error(e):
                    raise
                if attempt < max_retries:
                    backoff_time = 0.1 * (2 ** attempt)
                    logger.warning(
                        f"🔄 {func.__name__}: transient store error, retrying "
                        f"({attempt + 2}/{max_retries + 1}) after {backoff_time}s: {e}"
                    )
                    time.sleep(backoff_time)
                    continue
                logger.error(f"❌ {func.__name__}: transient store error after {max_retries + 1} attempts: {e}")
                raise TransientStoreError(str(e), operation=func.__name__) from e

    return wrapper  # type: ignore[return-value]


def lock_row(session: Session, model, row_id: int, skip_locked: bool = False):
    """
    Load one row under an exclusive row lock (FOR UPDATE) for the rest of the
    transaction. On SQLite the transaction already holds the write lock.
    """
    stmt = select(model).where(model.id == row_id).with_for_update(skip_locked=skip_locked)
    # populate_existing so a cached identity is refreshed with the locked values
    return session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
