"""Response envelope and shared schema helpers."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Every endpoint answers with ``{success, data?, message?, error?}``."""

    success: bool = True
    data: T | None = None
    message: str | None = None
    error: str | None = None


class Page(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int


def enum_value(v: object) -> object:
    """Unwrap enum members so ``from_attributes`` models serialize plain strings."""
    if hasattr(v, "value"):
        return v.value
    return v
