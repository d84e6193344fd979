"""Pydantic v2 schemas for Escrow."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from visaflow.schemas.case import CaseResponse
from visaflow.schemas.common import enum_value


class FundEscrow(BaseModel):
    proposal_id: uuid.UUID
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    payment_method: str = Field("stripe", pattern=r"^(stripe|paypal|bank_transfer|other)$")


class ReleaseEscrow(BaseModel):
    milestone_id: uuid.UUID | None = None
    amount: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    reason: str = Field("Payment released", max_length=1000)


class HoldEscrow(BaseModel):
    reason: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=20, max_length=5000)
    evidence: list[str] = Field(default_factory=list, max_length=20)


class ResolveDispute(BaseModel):
    resolution: str = Field(..., min_length=10, max_length=5000)
    outcome: str = Field(..., pattern=r"^(resume|release|refund)$")


class EscalateDispute(BaseModel):
    note: str = Field(..., min_length=10, max_length=2000)


class RefundEscrow(BaseModel):
    reason: str = Field(..., min_length=5, max_length=1000)


class CancelEscrow(BaseModel):
    reason: str = Field(..., min_length=5, max_length=1000)


class EscrowMilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    milestone_id: uuid.UUID
    order: int
    description: str
    amount: Decimal
    status: str
    completed_at: datetime | None
    evidence: list

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> object:
        return enum_value(v)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reason: str
    description: str
    evidence: list
    created_by: uuid.UUID
    status: str
    resolution: str | None
    outcome: str | None
    resolved_by: uuid.UUID | None
    resolved_at: datetime | None
    created_at: datetime

    @field_validator("status", "outcome", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return enum_value(v)


class TimelineEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event: str
    description: str
    date: datetime
    by: uuid.UUID
    data: dict | None


class FeesResponse(BaseModel):
    platform: Decimal
    payment: Decimal
    total: Decimal


class RefundDetails(BaseModel):
    amount: Decimal
    reason: str | None
    processed_at: datetime | None
    refund_id: str | None


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: uuid.UUID
    client_id: uuid.UUID
    agent_id: uuid.UUID
    proposal_id: uuid.UUID
    visa_request_id: uuid.UUID
    amount: Decimal
    currency: str
    status: str
    payment_method: str
    payment_intent_id: str | None
    milestones: list[EscrowMilestoneResponse]
    dispute: DisputeResponse | None
    timeline: list[TimelineEntryResponse]
    fees: FeesResponse
    refund_details: RefundDetails | None
    released_amount: Decimal
    remaining_amount: Decimal
    version: int
    created_at: datetime
    updated_at: datetime

    @field_validator("status", "payment_method", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return enum_value(v)


class EscrowStatusResponse(BaseModel):
    """Computed, read-only view of an escrow."""

    model_config = ConfigDict(from_attributes=True)

    escrow_id: uuid.UUID
    status: str
    amount: Decimal
    currency: str
    released_amount: Decimal
    remaining_amount: Decimal
    progress: float
    completed_milestones: int
    total_milestones: int
    milestones: list[EscrowMilestoneResponse]
    dispute: DisputeResponse | None
    fees: FeesResponse
    updated_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> object:
        return enum_value(v)

    @field_validator("completed_milestones", mode="before")
    @classmethod
    def count_completed(cls, v: object) -> object:
        if isinstance(v, list):
            return len(v)
        return v


class FundResponse(BaseModel):
    escrow: EscrowResponse
    case: CaseResponse
