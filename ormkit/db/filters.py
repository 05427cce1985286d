from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ormkit.core.config import settings

T = TypeVar("T")


class Order(str, Enum):
    asc = "asc"
    desc = "desc"


class BaseFilter(BaseModel):
    """Paging, sorting and free-text search parameters shared by all read queries.

    Repositories that need extra criteria subclass this and override
    ``ReadRepository.apply_filter``.
    """

    model_config = ConfigDict(validate_assignment=True)

    q: Optional[str] = Field(default=None, description="Case-insensitive text searched in string columns")
    sort_by: str = Field(default="id", min_length=1, description="Attribute name, dotted for related entities")
    order: Order = Field(default=Order.asc)
    skip: int = Field(default=0, ge=0)
    take: int = Field(default_factory=lambda: settings.default_page_size, ge=1)

    @field_validator("order", mode="before")
    @classmethod
    def _normalize_order(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("take")
    @classmethod
    def _cap_take(cls, value: int) -> int:
        return min(value, settings.max_page_size)


@dataclass
class Page(Generic[T]):
    """A page of entities plus the number of entities matching the filter."""

    total: int = 0
    data: list[T] = field(default_factory=list)


__all__ = ["Order", "BaseFilter", "Page"]
