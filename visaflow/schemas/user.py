"""Pydantic v2 schemas for user registration and profile."""

import re
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from visaflow.schemas.common import enum_value

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class UserCreate(BaseModel):
    public_key: str = Field(..., max_length=128, description="Ed25519 public key (hex)")
    name: str = Field(..., min_length=1, max_length=128)
    email: str = Field(..., max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    role: str = Field(..., pattern=r"^(client|agent)$")

    @field_validator("public_key")
    @classmethod
    def validate_public_key(cls, v: str) -> str:
        if not _HEX_KEY.match(v):
            raise ValueError("public_key must be a 32-byte hex-encoded Ed25519 key")
        return v.lower()

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    name: str
    email: str
    role: str
    status: str
    public_key: str
    created_at: datetime

    @field_validator("role", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return enum_value(v)
