"""Ed25519 signature verification and role dependencies for FastAPI."""

import uuid
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.config import settings
from visaflow.database import get_db
from visaflow.errors import Forbidden, Unauthorized
from visaflow.models.user import User, UserRole, UserStatus
from visaflow.redis import get_redis
from visaflow.utils.crypto import AUTH_SCHEME, is_timestamp_valid, verify_signature

_SCHEME_PREFIX = f"{AUTH_SCHEME} "


class AuthenticatedUser:
    """Container for the verified caller."""

    def __init__(self, user_id: uuid.UUID, user: User) -> None:
        self.user_id = user_id
        self.user = user

    @property
    def role(self) -> UserRole:
        return self.user.role

    @property
    def is_admin(self) -> bool:
        return self.user.is_admin


def parse_authorization(header: str) -> tuple[uuid.UUID, str]:
    """Split ``Sig <user_id>:<signature>`` into its parts."""
    if not header.startswith(_SCHEME_PREFIX):
        raise Unauthorized("Invalid authorization scheme")
    try:
        user_id_str, signature = header[len(_SCHEME_PREFIX):].split(":", 1)
        return uuid.UUID(user_id_str), signature
    except ValueError:
        raise Unauthorized("Malformed authorization header")


async def verify_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> AuthenticatedUser:
    """Verify the Ed25519 signature on an incoming request."""
    auth_header = request.headers.get("Authorization")
    timestamp = request.headers.get("X-Timestamp")
    nonce = request.headers.get("X-Nonce")

    if not auth_header or not timestamp:
        raise Unauthorized("Not authorized to access this route")

    user_id, signature = parse_authorization(auth_header)

    if not is_timestamp_valid(timestamp, settings.signature_max_age_seconds):
        raise Unauthorized("Request timestamp expired")

    # Replay protection
    if nonce:
        already_used = not await redis.set(
            f"nonce:{nonce}", "1", nx=True, ex=settings.nonce_ttl_seconds
        )
        if already_used:
            raise Unauthorized("Nonce already used")

    result = await db.execute(select(User).where(User.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise Unauthorized("User not found")
    if user.status != UserStatus.ACTIVE:
        raise Unauthorized("User account is not active")

    body = await request.body()
    if not verify_signature(
        user.public_key, signature, timestamp, request.method, request.url.path, body
    ):
        raise Unauthorized("Invalid signature")

    return AuthenticatedUser(user_id=user_id, user=user)


def require_role(*roles: UserRole) -> Callable[..., Awaitable[AuthenticatedUser]]:
    """Dependency factory: authenticated caller must hold one of ``roles``."""
    allowed = set(roles)

    async def _check(auth: AuthenticatedUser = Depends(verify_request)) -> AuthenticatedUser:
        if auth.role not in allowed:
            names = ", ".join(sorted(r.value for r in allowed))
            raise Forbidden(f"User role {auth.role.value} is not authorized (requires {names})")
        return auth

    return _check
