"""Pydantic v2 schemas for visa requests."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from visaflow.models.visa_request import BUDGET_BANDS, TIMELINES, VISA_TYPES
from visaflow.schemas.common import enum_value


class VisaRequestCreate(BaseModel):
    title: str = Field(..., min_length=5, max_length=200)
    visa_type: str
    country: str = Field(..., min_length=2, max_length=100)
    description: str = Field(..., min_length=20, max_length=5000)
    budget: str
    timeline: str
    priority: str = Field("medium", pattern=r"^(low|medium|high|urgent)$")

    @field_validator("visa_type")
    @classmethod
    def validate_visa_type(cls, v: str) -> str:
        if v not in VISA_TYPES:
            raise ValueError(f"visa_type must be one of: {', '.join(VISA_TYPES)}")
        return v

    @field_validator("budget")
    @classmethod
    def validate_budget(cls, v: str) -> str:
        if v not in BUDGET_BANDS:
            raise ValueError(f"budget must be one of: {', '.join(BUDGET_BANDS)}")
        return v

    @field_validator("timeline")
    @classmethod
    def validate_timeline(cls, v: str) -> str:
        if v not in TIMELINES:
            raise ValueError(f"timeline must be one of: {', '.join(TIMELINES)}")
        return v


class VisaRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: uuid.UUID
    client_id: uuid.UUID
    title: str
    visa_type: str
    country: str
    description: str
    budget: str
    timeline: str
    priority: str
    status: str
    proposal_count: int
    created_at: datetime
    updated_at: datetime

    @field_validator("priority", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return enum_value(v)


class VisaRequestUpdate(BaseModel):
    """Partial update. Only the fields sent are changed."""

    title: str | None = Field(None, min_length=5, max_length=200)
    visa_type: str | None = None
    country: str | None = Field(None, min_length=2, max_length=100)
    description: str | None = Field(None, min_length=20, max_length=5000)
    budget: str | None = None
    timeline: str | None = None
    priority: str | None = Field(None, pattern=r"^(low|medium|high|urgent)$")

    @field_validator("visa_type")
    @classmethod
    def validate_visa_type(cls, v: str | None) -> str | None:
        if v is not None and v not in VISA_TYPES:
            raise ValueError(f"visa_type must be one of: {', '.join(VISA_TYPES)}")
        return v

    @field_validator("budget")
    @classmethod
    def validate_budget(cls, v: str | None) -> str | None:
        if v is not None and v not in BUDGET_BANDS:
            raise ValueError(f"budget must be one of: {', '.join(BUDGET_BANDS)}")
        return v

    @field_validator("timeline")
    @classmethod
    def validate_timeline(cls, v: str | None) -> str | None:
        if v is not None and v not in TIMELINES:
            raise ValueError(f"timeline must be one of: {', '.join(TIMELINES)}")
        return v
