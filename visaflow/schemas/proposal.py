"""Pydantic v2 schemas for proposals."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from visaflow.models.visa_request import TIMELINES
from visaflow.schemas.common import enum_value


class ProposalMilestoneIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    due_date: datetime
    deliverables: list[str] = Field(default_factory=list, max_length=20)


class ProposalCreate(BaseModel):
    request_id: uuid.UUID
    budget: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    timeline: str
    cover_letter: str = Field(..., min_length=1, max_length=1000)
    proposal_text: str = Field(..., min_length=1, max_length=3000)
    milestones: list[ProposalMilestoneIn] = Field(..., min_length=1, max_length=20)

    @field_validator("timeline")
    @classmethod
    def validate_timeline(cls, v: str) -> str:
        if v not in TIMELINES:
            raise ValueError(f"timeline must be one of: {', '.join(TIMELINES)}")
        return v

    @model_validator(mode="after")
    def milestones_match_budget(self) -> "ProposalCreate":
        total = sum((m.amount for m in self.milestones), Decimal("0"))
        if total != self.budget:
            raise ValueError(
                f"Milestone amounts ({total}) must add up to the proposal budget ({self.budget})"
            )
        return self


class ProposalUpdate(BaseModel):
    """Partial update of a pending proposal. ``milestones`` replaces the whole breakdown."""

    budget: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    timeline: str | None = None
    cover_letter: str | None = Field(None, min_length=1, max_length=1000)
    proposal_text: str | None = Field(None, min_length=1, max_length=3000)
    milestones: list[ProposalMilestoneIn] | None = Field(None, min_length=1, max_length=20)

    @field_validator("timeline")
    @classmethod
    def validate_timeline(cls, v: str | None) -> str | None:
        if v is not None and v not in TIMELINES:
            raise ValueError(f"timeline must be one of: {', '.join(TIMELINES)}")
        return v


class ProposalMilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    proposal_milestone_id: uuid.UUID
    order: int
    title: str
    description: str
    amount: Decimal
    due_date: datetime
    deliverables: list


class ProposalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    proposal_id: uuid.UUID
    request_id: uuid.UUID
    agent_id: uuid.UUID
    budget: Decimal
    timeline: str
    cover_letter: str
    proposal_text: str
    status: str
    milestones: list[ProposalMilestoneResponse]
    submitted_at: datetime
    responded_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> object:
        return enum_value(v)
