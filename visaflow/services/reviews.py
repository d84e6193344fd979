"""Review business logic: submit, read, update, delete and rating summaries."""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from visaflow.auth.middleware import AuthenticatedUser
from visaflow.errors import Conflict, Forbidden, InvalidState, NotFound
from visaflow.models.case import Case, CaseStatus
from visaflow.models.review import Review, ReviewRole
from visaflow.schemas.review import RatingSummary, ReviewCreate, ReviewUpdate

logger = logging.getLogger(__name__)

REVIEWABLE_STATUSES = frozenset({CaseStatus.COMPLETED, CaseStatus.CANCELLED})


async def _get_case(db: AsyncSession, case_id: uuid.UUID) -> Case:
    case = await db.get(Case, case_id)
    if case is None:
        raise NotFound("Case not found")
    return case


async def submit_review(
    db: AsyncSession, case_id: uuid.UUID, reviewer_id: uuid.UUID, data: ReviewCreate
) -> Review:
    """Review the other party of a closed case. Each party can review once."""
    case = await _get_case(db, case_id)
    if reviewer_id == case.client_id:
        reviewee_id, role = case.agent_id, ReviewRole.CLIENT_REVIEWING_AGENT
    elif reviewer_id == case.agent_id:
        reviewee_id, role = case.client_id, ReviewRole.AGENT_REVIEWING_CLIENT
    else:
        raise Forbidden("Only parties to the case can leave reviews")

    if case.status not in REVIEWABLE_STATUSES:
        raise InvalidState(
            f"Can only review completed or cancelled cases, currently {case.status.value}"
        )

    existing = await db.execute(
        select(Review.review_id).where(
            Review.case_id == case_id,
            Review.reviewer_id == reviewer_id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise Conflict("You have already reviewed this case")

    review = Review(
        review_id=uuid.uuid4(),
        case_id=case_id,
        reviewer_id=reviewer_id,
        reviewee_id=reviewee_id,
        role=role,
        rating=data.rating,
        comment=data.comment,
        tags=list(data.tags),
        is_public=data.is_public,
    )
    db.add(review)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("You have already reviewed this case")

    await db.refresh(review)
    logger.info("Review %s on case %s by %s", review.review_id, case_id, reviewer_id)
    return review


async def get_review(db: AsyncSession, review_id: uuid.UUID, auth: AuthenticatedUser) -> Review:
    review = await db.get(Review, review_id)
    if review is None:
        raise NotFound("Review not found")
    if not review.is_public and not auth.is_admin and auth.user_id not in (
        review.reviewer_id, review.reviewee_id,
    ):
        raise Forbidden("Review is not public")
    return review


async def _get_own(db: AsyncSession, review_id: uuid.UUID, user_id: uuid.UUID, action: str) -> Review:
    review = await db.get(Review, review_id)
    if review is None:
        raise NotFound("Review not found")
    if review.reviewer_id != user_id:
        raise Forbidden(f"Not authorized to {action} this review")
    return review


async def update_review(
    db: AsyncSession, review_id: uuid.UUID, user_id: uuid.UUID, data: ReviewUpdate
) -> Review:
    review = await _get_own(db, review_id, user_id, "update")
    for field, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(review, field, value)
    await db.commit()
    await db.refresh(review)
    return review


async def delete_review(db: AsyncSession, review_id: uuid.UUID, user_id: uuid.UUID) -> None:
    review = await _get_own(db, review_id, user_id, "delete")
    await db.delete(review)
    await db.commit()
    logger.info("Review %s deleted by %s", review_id, user_id)


async def rating_summary(db: AsyncSession, user_id: uuid.UUID) -> RatingSummary:
    """Average and per-star counts over a user's public reviews."""
    result = await db.execute(
        select(Review.rating, func.count())
        .where(Review.reviewee_id == user_id, Review.is_public.is_(True))
        .group_by(Review.rating)
    )
    distribution = {str(star): 0 for star in range(1, 6)}
    for rating, count in result.all():
        distribution[str(rating)] = count
    total = sum(distribution.values())
    weighted = sum(int(star) * count for star, count in distribution.items())
    average = round(weighted / total, 2) if total else 0.0
    return RatingSummary(average=average, total=total, distribution=distribution)


async def list_reviews_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    page: int = 1,
    limit: int = 10,
    rating: int | None = None,
) -> tuple[list[Review], int]:
    """Public reviews a user received, newest first."""
    base = select(Review).where(Review.reviewee_id == user_id, Review.is_public.is_(True))
    if rating is not None:
        base = base.where(Review.rating == rating)
    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar_one()
    result = await db.execute(
        base.order_by(Review.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    return list(result.scalars().all()), total


async def list_reviews_given(
    db: AsyncSession, user_id: uuid.UUID, page: int = 1, limit: int = 10
) -> tuple[list[Review], int]:
    base = select(Review).where(Review.reviewer_id == user_id)
    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar_one()
    result = await db.execute(
        base.order_by(Review.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    return list(result.scalars().all()), total


async def list_reviews_for_case(
    db: AsyncSession, case_id: uuid.UUID, auth: AuthenticatedUser
) -> list[Review]:
    case = await _get_case(db, case_id)
    if not auth.is_admin and not case.is_party(auth.user_id):
        raise Forbidden("Not authorized to view reviews for this case")
    result = await db.execute(
        select(Review).where(Review.case_id == case_id).order_by(Review.created_at.asc())
    )
    return list(result.scalars().all())
