"""
User service: registration, authentication and profile maintenance.

Passwords are stored as bcrypt digests only.  A successful registration
publishes ``UserRegistered`` on the events exchange before the session is
committed; a ``TransportError`` fails the registration as a whole.
"""
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ecommerce.config import settings
from ecommerce.messaging.bus import MessageBus
from ecommerce.messaging.events import USER_REGISTERED, EventEnvelope, UserRegistered
from ecommerce.security import hash_password, issue_token, verify_password
from ecommerce.users.models import User
from ecommerce.users.schemas import LoginRequest, LoginResponse, RegisterRequest, UserResponse, UserUpdate

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    pass


def _login_response(user: User) -> LoginResponse:
    token = issue_token({"sub": str(user.id), "email": user.email, "name": user.full_name})
    return LoginResponse(user_id=user.id, email=user.email, full_name=user.full_name, token=token)


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def register_user(db: AsyncSession, bus: MessageBus, data: RegisterRequest) -> LoginResponse | None:
    """
    Create the account and return a login response with a fresh token.

    Returns None when the email address is already registered.
    """
    if await get_user_by_email(db, data.email) is not None:
        return None

    user = User(
        full_name=data.full_name,
        email=data.email,
        password_hash=hash_password(data.password),
        phone_number=data.phone_number,
        address=data.address,
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )
    db.add(user)
    await db.flush()

    envelope = EventEnvelope(
        payload=UserRegistered(user_id=user.id, email=user.email, full_name=user.full_name)
    )
    await bus.publish(settings.EVENTS_EXCHANGE, USER_REGISTERED, envelope)
    logger.info("User registered: %s", user.email)
    return _login_response(user)


async def authenticate(db: AsyncSession, data: LoginRequest) -> LoginResponse:
    user = await get_user_by_email(db, data.email)
    if user is None or not verify_password(data.password, user.password_hash):
        raise AuthenticationError("Invalid email or password")
    if not user.is_active:
        raise AuthenticationError("User account is inactive")
    logger.info("User logged in: %s", user.email)
    return _login_response(user)


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> dict | None:
    user = await db.get(User, user_id)
    if user is None:
        return None
    return UserResponse.model_validate(user).model_dump(mode="json")


async def update_user(db: AsyncSession, user_id: uuid.UUID, data: UserUpdate) -> bool:
    user = await db.get(User, user_id)
    if user is None:
        return False
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    user.updated_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("User updated: %s", user.email)
    return True
