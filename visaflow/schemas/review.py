"""Pydantic v2 schemas for reviews and rating summaries."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from visaflow.schemas.common import enum_value


def _check_tags(v: list[str] | None) -> list[str] | None:
    if v is None:
        return v
    for tag in v:
        if not tag.strip():
            raise ValueError("Tags cannot be blank")
        if len(tag) > 64:
            raise ValueError("Tag must be <= 64 chars")
    return v


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=1000)
    tags: list[str] = Field(default_factory=list, max_length=10)
    is_public: bool = True

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str]) -> list[str]:
        return _check_tags(v) or []


class ReviewUpdate(BaseModel):
    rating: int | None = Field(None, ge=1, le=5)
    comment: str | None = Field(None, min_length=10, max_length=1000)
    tags: list[str] | None = Field(None, max_length=10)
    is_public: bool | None = None

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str] | None) -> list[str] | None:
        return _check_tags(v)


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    review_id: uuid.UUID
    case_id: uuid.UUID
    reviewer_id: uuid.UUID
    reviewee_id: uuid.UUID
    role: str
    rating: int
    comment: str
    tags: list[str]
    is_public: bool
    created_at: datetime
    updated_at: datetime

    @field_validator("role", mode="before")
    @classmethod
    def serialize_role(cls, v: object) -> object:
        return enum_value(v)


class RatingSummary(BaseModel):
    average: float
    total: int
    # Count per star, keys "1" through "5"
    distribution: dict[str, int]


class UserReviewPage(BaseModel):
    items: list[ReviewResponse]
    total: int
    page: int
    limit: int
    stats: RatingSummary
