"""Paginated result model."""
from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Pagination(BaseModel):
    """Position of a page within a result set."""

    current_page: int
    per_page: int
    total_pages: int
    total_count: int
    has_previous: bool
    has_next: bool

    @classmethod
    def build(cls, page: int, per_page: int, total_count: int) -> "Pagination":
        """Derive page counters from the total count."""
        total_pages = (total_count + per_page - 1) // per_page if per_page else 0
        return cls(
            current_page=page,
            per_page=per_page,
            total_pages=total_pages,
            total_count=total_count,
            has_previous=page > 1,
            has_next=page * per_page < total_count,
        )


class Page(BaseModel, Generic[T]):
    """Items of one page plus its pagination counters."""

    items: list[T]
    pagination: Pagination
