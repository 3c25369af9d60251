"""Paginated listings over SQLAlchemy selects.

Queue and conflict listings share one shape: count the filtered select, fetch
one ordered page and serialize the rows with ``to_dict``.
"""

from typing import Any, Dict, Generic, List, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

T = TypeVar("T")


class PaginationParams(BaseModel):
    """Page request as sent by operator tooling."""

    page: int = Field(default=1, ge=1, description="Page number")
    page_size: int = Field(default=20, ge=1, le=100, description="Items per page")

    @property
    def offset(self) -> int:
        """Rows to skip before the page."""
        return (self.page - 1) * self.page_size


class PaginatedResponse(BaseModel, Generic[T]):
    """One page of a listing plus navigation fields."""

    items: List[T]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def create(
        cls, items: List[T], total: int, page: int, page_size: int
    ) -> "PaginatedResponse[T]":
        """Derive navigation fields from the total."""
        total_pages = (total + page_size - 1) // page_size

        return cls(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )


def paginate(
    session: Session, stmt: Select, params: PaginationParams
) -> PaginatedResponse[Dict[str, Any]]:
    """Run one page of an ordered select.

    Args:
        session: Open session
        stmt: Filtered and ordered select of ORM rows exposing ``to_dict``
        params: Requested page

    Returns:
        Page of serialized rows
    """
    total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = session.scalars(stmt.offset(params.offset).limit(params.page_size)).all()

    return PaginatedResponse.create(
        items=[row.to_dict() for row in rows],
        total=total,
        page=params.page,
        page_size=params.page_size,
    )
