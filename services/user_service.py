"""User lookup and registration for the commerce core"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import User
from utils.atomic_transactions import require_atomic_transaction

logger = logging.getLogger(__name__)


@require_atomic_transaction
def get_or_create_user(
    telegram_id: int,
    username: Optional[str] = None,
    language_code: Optional[str] = None,
    session: Optional[Session] = None,
) -> User:
    """
    Return the user for an external identity, creating it on first contact.
    A concurrent first contact is resolved by the unique telegram_id index.
    """
    user = session.execute(select(User).where(User.telegram_id == telegram_id)).scalar_one_or_none()
    if user is not None:
        if username and user.username != username:
            user.username = username
        return user

    try:
        with session.begin_nested():
            user = User(
                telegram_id=telegram_id,
                username=username,
                language_code=(language_code or "en")[:10],
                balance_cents=0,
            )
            session.add(user)
        logger.info(f"👤 USER_CREATED: telegram_id {telegram_id} -> user {user.id}")
        return user
    except IntegrityError:
        logger.debug(f"User creation race for telegram_id {telegram_id}, loading existing row")
        return session.execute(select(User).where(User.telegram_id == telegram_id)).scalar_one()


@require_atomic_transaction
def get_user(user_id: int, session: Optional[Session] = None) -> Optional[User]:
    return session.get(User, user_id)


@require_atomic_transaction
def set_user_language(user_id: int, language_code: str, session: Optional[Session] = None) -> bool:
    user = session.get(User, user_id)
    if user is None:
        return False
    user.language_code = language_code[:10]
    return True
