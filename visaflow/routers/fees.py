"""Fee schedule endpoint. Public, no auth required."""

from fastapi import APIRouter

from visaflow.schemas.common import ApiResponse
from visaflow.services.fees import get_fee_schedule

router = APIRouter(tags=["fees"])


@router.get("/fees", response_model=ApiResponse[dict])
async def fee_schedule() -> ApiResponse[dict]:
    """Current escrow fee rates. Fees are fixed on an escrow when it is funded."""
    return ApiResponse(data=get_fee_schedule())
