"""Review endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser, verify_request
from visaflow.auth.rate_limit import check_rate_limit
from visaflow.database import get_db
from visaflow.schemas.common import ApiResponse, Page
from visaflow.schemas.review import ReviewCreate, ReviewResponse, ReviewUpdate, UserReviewPage
from visaflow.services import reviews as review_service
from visaflow.services.notifications import Notifier, get_notifier

router = APIRouter(tags=["reviews"])


@router.post(
    "/cases/{case_id}/reviews", response_model=ApiResponse[ReviewResponse], status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def submit_review(
    case_id: uuid.UUID,
    data: ReviewCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> ApiResponse[ReviewResponse]:
    """Review the other party once the case is completed or cancelled."""
    review = await review_service.submit_review(db, case_id, auth.user_id, data)
    await notifier.notify(
        review.reviewee_id, "review:new",
        {"review_id": str(review.review_id), "case_id": str(case_id), "rating": review.rating},
        title="New review",
        message=f"{auth.user.name} left you a {review.rating}-star review.",
        sender_id=auth.user_id,
        link=f"/reviews/{review.review_id}",
    )
    return ApiResponse(data=ReviewResponse.model_validate(review), message="Review created")


@router.get(
    "/cases/{case_id}/reviews", response_model=ApiResponse[list[ReviewResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def get_case_reviews(
    case_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[list[ReviewResponse]]:
    reviews = await review_service.list_reviews_for_case(db, case_id, auth)
    return ApiResponse(data=[ReviewResponse.model_validate(r) for r in reviews])


@router.get(
    "/reviews/given", response_model=ApiResponse[Page[ReviewResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def get_given_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[Page[ReviewResponse]]:
    reviews, total = await review_service.list_reviews_given(db, auth.user_id, page, limit)
    return ApiResponse(data=Page(
        items=[ReviewResponse.model_validate(r) for r in reviews],
        total=total, page=page, limit=limit,
    ))


@router.get(
    "/reviews/user/{user_id}", response_model=ApiResponse[UserReviewPage],
    dependencies=[Depends(check_rate_limit)],
)
async def get_user_reviews(
    user_id: uuid.UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    rating: int | None = Query(None, ge=1, le=5),
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[UserReviewPage]:
    """Public reviews a user received, with their rating summary."""
    reviews, total = await review_service.list_reviews_for_user(db, user_id, page, limit, rating)
    stats = await review_service.rating_summary(db, user_id)
    return ApiResponse(data=UserReviewPage(
        items=[ReviewResponse.model_validate(r) for r in reviews],
        total=total, page=page, limit=limit, stats=stats,
    ))


@router.get(
    "/reviews/{review_id}", response_model=ApiResponse[ReviewResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_review(
    review_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[ReviewResponse]:
    review = await review_service.get_review(db, review_id, auth)
    return ApiResponse(data=ReviewResponse.model_validate(review))


@router.put(
    "/reviews/{review_id}", response_model=ApiResponse[ReviewResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def update_review(
    review_id: uuid.UUID,
    data: ReviewUpdate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[ReviewResponse]:
    review = await review_service.update_review(db, review_id, auth.user_id, data)
    return ApiResponse(data=ReviewResponse.model_validate(review), message="Review updated")


@router.delete(
    "/reviews/{review_id}", response_model=ApiResponse[None],
    dependencies=[Depends(check_rate_limit)],
)
async def delete_review(
    review_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[None]:
    await review_service.delete_review(db, review_id, auth.user_id)
    return ApiResponse(message="Review deleted")
