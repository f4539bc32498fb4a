"""
FastAPI-Users configuration: user manager, auth backend, schemas, signup bonus hook.
"""

import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi_users import BaseUserManager, FastAPIUsers, IntegerIDMixin, InvalidPasswordException
from fastapi_users.authentication import AuthenticationBackend, BearerTransport, JWTStrategy
from fastapi_users.db import SQLAlchemyUserDatabase
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from ...components.ledger.store import LedgerStore
from ...models.enums import CreditPool, LedgerKind
from ...models.user import User
from ...platform.config import settings
from ...platform.database import get_async_db

logger = logging.getLogger("credit_engine.auth")


# ---- Schemas (extend FastAPI-Users base) ----
from fastapi_users import schemas


class UserRead(schemas.BaseUser[int]):
    full_name: Optional[str] = None


class UserCreate(schemas.BaseUserCreate):
    full_name: Optional[str] = None


class UserUpdate(schemas.BaseUserUpdate):
    full_name: Optional[str] = None


def grant_signup_bonus(user_id: int, store: Optional[LedgerStore] = None) -> None:
    """Open the user's credit account with the signup bonus in the purchased pool."""
    store = store or LedgerStore()
    store.ensure_account(user_id)
    bonus = int(settings.SIGNUP_BONUS_CREDITS or 0)
    if bonus <= 0:
        return
    store.credit(
        user_id,
        bonus,
        CreditPool.PURCHASED,
        LedgerKind.GRANT,
        related_event_id=f"signup-bonus:{user_id}",
        description="Signup bonus",
    )


# ---- User Manager ----
class UserManager(IntegerIDMixin, BaseUserManager[User, int]):
    reset_password_token_secret = settings.SECRET_KEY
    verification_token_secret = settings.SECRET_KEY

    async def validate_password(self, password: str, user) -> None:
        if len(password) < 8:
            raise InvalidPasswordException(reason="Password should be at least 8 characters")

    async def on_after_register(self, user: User, request: Optional[Request] = None) -> None:
        # Registration already committed; the bonus is keyed by user id so a retry cannot double it.
        await run_in_threadpool(grant_signup_bonus, user.id)
        logger.info("Registered user id=%s", user.id, extra={"account_id": user.id})


async def get_user_db(session: AsyncSession = Depends(get_async_db)):
    yield SQLAlchemyUserDatabase(session, User)


async def get_user_manager(user_db: SQLAlchemyUserDatabase = Depends(get_user_db)):
    yield UserManager(user_db)


# ---- Auth Backend ----
bearer_transport = BearerTransport(tokenUrl="/api/v1/auth/jwt/login")


def get_jwt_strategy() -> JWTStrategy:
    return JWTStrategy(
        secret=settings.SECRET_KEY,
        lifetime_seconds=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


auth_backend = AuthenticationBackend(
    name="jwt",
    transport=bearer_transport,
    get_strategy=get_jwt_strategy,
)

fastapi_users = FastAPIUsers[User, int](get_user_manager, [auth_backend])

current_active_user = fastapi_users.current_user(active=True)
