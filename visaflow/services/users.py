"""User registration and lookup."""

import logging
import uuid

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.errors import Conflict, NotFound
from visaflow.models.user import User, UserRole
from visaflow.schemas.user import UserCreate

logger = logging.getLogger(__name__)


async def register_user(db: AsyncSession, data: UserCreate) -> User:
    """Register a client or agent. Admins are provisioned out of band."""
    result = await db.execute(
        select(User).where(
            or_(User.public_key == data.public_key, User.email == data.email)
        )
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        if existing.public_key == data.public_key:
            raise Conflict("Public key already registered")
        raise Conflict("Email already registered")

    user = User(
        user_id=uuid.uuid4(),
        public_key=data.public_key,
        name=data.name,
        email=data.email,
        role=UserRole(data.role),
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("Registered %s %s", user.role.value, user.user_id)
    return user


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user
