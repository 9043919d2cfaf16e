"""Request dependencies: database session, config and the switch owner."""

import uuid
from typing import Annotated

from fastapi import Cookie, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import AppConfig, get_config
from app.core.database import get_db
from app.core.datetime_utils import utc_now
from app.models.user import Session, User

DBSession = Annotated[AsyncSession, Depends(get_db)]
Config = Annotated[AppConfig, Depends(get_config)]

SESSION_COOKIE = "session_id"


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
    )


async def get_current_user(
    db: DBSession,
    session_id: str | None = Cookie(default=None, alias=SESSION_COOKIE),
) -> User:
    """
    Resolve the switch owner from the session cookie.

    Sessions are issued elsewhere; this only reads them. Unknown, malformed
    and expired sessions are all a plain 401.
    """
    if not session_id:
        raise _unauthorized()

    try:
        session_uuid = uuid.UUID(session_id)
    except ValueError:
        raise _unauthorized() from None

    result = await db.execute(
        select(User)
        .join(Session, Session.user_id == User.id)
        .where(Session.id == session_uuid, Session.expires_at >= utc_now())
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise _unauthorized()
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]
