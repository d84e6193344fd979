"""User registration and profile endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser, verify_request
from visaflow.auth.rate_limit import check_rate_limit
from visaflow.database import get_db
from visaflow.schemas.common import ApiResponse
from visaflow.schemas.user import UserCreate, UserResponse
from visaflow.services import users as user_service

router = APIRouter(prefix="/users", tags=["users"])


@router.post(
    "", response_model=ApiResponse[UserResponse], status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def register_user(
    data: UserCreate,
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[UserResponse]:
    """Register a client or agent with an Ed25519 public key."""
    user = await user_service.register_user(db, data)
    return ApiResponse(data=UserResponse.model_validate(user), message="User registered")


@router.get("/me", response_model=ApiResponse[UserResponse], dependencies=[Depends(check_rate_limit)])
async def get_me(
    auth: AuthenticatedUser = Depends(verify_request),
) -> ApiResponse[UserResponse]:
    return ApiResponse(data=UserResponse.model_validate(auth.user))
