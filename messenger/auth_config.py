import logging
import uuid
from typing import Optional

import jwt
from fastapi import Depends, Request, Response
from fastapi_users import BaseUserManager, FastAPIUsers, UUIDIDMixin
from fastapi_users.authentication import (
    AuthenticationBackend,
    CookieTransport,
    JWTStrategy,
)
from fastapi_users.db import SQLAlchemyUserDatabase

from messenger.core.config import settings
from messenger.db import get_user_db
from messenger.models import User

logger = logging.getLogger(__name__)

AUTH_COOKIE_NAME = "fastapiusersauth"


class UserManager(UUIDIDMixin, BaseUserManager[User, uuid.UUID]):
    reset_password_token_secret = settings.SECRET
    verification_token_secret = settings.SECRET

    async def on_after_register(self, user: User, request: Optional[Request] = None):
        logger.info(f"User {user.id} has registered.")

    async def on_after_login(
        self,
        user: User,
        request: Optional[Request] = None,
        response: Optional[Response] = None,
    ):
        logger.info(f"User {user.id} has logged in.")


async def get_user_manager(user_db: SQLAlchemyUserDatabase = Depends(get_user_db)):
    yield UserManager(user_db)


transport = CookieTransport(cookie_name=AUTH_COOKIE_NAME)


def get_strategy() -> JWTStrategy:
    return JWTStrategy(
        secret=settings.SECRET,
        lifetime_seconds=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        algorithm=settings.ALGORITHM,
    )


auth_backend = AuthenticationBackend(
    name="cookie",
    transport=transport,
    get_strategy=get_strategy,
)

fastapi_users = FastAPIUsers[User, uuid.UUID](get_user_manager, [auth_backend])

current_active_user = fastapi_users.current_user(active=True)


def decode_user_id(token: str | None) -> uuid.UUID | None:
    """
    Reads the user id from an auth token outside of the HTTP dependency
    chain (socket handshakes). Returns None for a missing or invalid token.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            settings.SECRET,
            algorithms=[settings.ALGORITHM],
            options={"verify_aud": False},
        )
        return uuid.UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, TypeError, ValueError) as e:
        logger.debug(f"Rejected auth token: {e}")
        return None
