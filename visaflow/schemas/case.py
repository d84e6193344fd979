"""Pydantic v2 schemas for Case endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from visaflow.schemas.common import enum_value


class SubmittedFile(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=2048)
    uploaded_at: datetime | None = None


class UpdateMilestone(BaseModel):
    status: str
    agent_notes: str | None = Field(None, max_length=2000)
    submitted_files: list[SubmittedFile] | None = Field(None, max_length=20)


class ApproveMilestone(BaseModel):
    client_feedback: str | None = Field(None, max_length=2000)


class RejectMilestone(BaseModel):
    client_feedback: str = Field(..., min_length=5, max_length=2000)


class AddNote(BaseModel):
    note: str = Field(..., min_length=1, max_length=5000)


class UploadDocument(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=2048)
    type: str = Field(..., min_length=1, max_length=100)


class CaseMilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    case_milestone_id: uuid.UUID
    escrow_milestone_id: uuid.UUID | None
    order: int
    title: str
    description: str
    amount: Decimal
    status: str
    is_active: bool
    due_date: datetime
    started_at: datetime | None
    completed_at: datetime | None
    approved_at: datetime | None
    deliverables: list
    submitted_files: list
    client_feedback: str | None
    agent_notes: str | None
    is_paid: bool

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> object:
        return enum_value(v)


class CaseDocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_id: uuid.UUID
    name: str
    url: str
    type: str
    uploaded_by: uuid.UUID
    uploaded_at: datetime


class CaseTimelineEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    description: str
    performed_by: uuid.UUID
    performed_at: datetime
    data: dict | None


class CaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    case_id: uuid.UUID
    request_id: uuid.UUID
    proposal_id: uuid.UUID
    escrow_id: uuid.UUID | None
    client_id: uuid.UUID
    agent_id: uuid.UUID
    status: str
    priority: str
    progress: int
    current_milestone: int
    total_amount: Decimal
    paid_amount: Decimal
    currency: str
    client_notes: str | None
    agent_notes: str | None
    milestones: list[CaseMilestoneResponse]
    documents: list[CaseDocumentResponse]
    timeline: list[CaseTimelineEntryResponse]
    start_date: datetime
    estimated_completion_date: datetime
    actual_completion_date: datetime | None
    last_activity: datetime
    version: int
    created_at: datetime

    @field_validator("status", "priority", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return enum_value(v)


class PaymentSummary(BaseModel):
    total_paid: Decimal
    total_amount: Decimal
    remaining_amount: Decimal
    payments_count: int


class CaseTimelineResponse(BaseModel):
    case_id: uuid.UUID
    timeline: list[CaseTimelineEntryResponse]
    payment_summary: PaymentSummary
