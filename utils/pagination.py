"""
Pagination utilities for data layer queries.
Page-based parameters map onto limit/offset QuerySpecs.
"""
from pydantic import BaseModel, Field

from models.query import QuerySpec

MAX_PER_PAGE = 100


class PaginationParams(BaseModel):
    """Pagination parameters for API requests."""
    page: int = Field(default=1, ge=1, description="Page number (1-based)")
    per_page: int = Field(default=20, ge=1, le=MAX_PER_PAGE, description="Items per page")

    @property
    def offset(self) -> int:
        """Calculate offset from page and per_page."""
        return (self.page - 1) * self.per_page

    @property
    def limit(self) -> int:
        """Get limit (same as per_page)."""
        return self.per_page

    def apply(self, spec: QuerySpec) -> QuerySpec:
        """Restrict a query to this page and ask for the exact total."""
        return spec.paginate(self.page, self.per_page).model_copy(update={"count": True})


class PaginationMeta(BaseModel):
    """Pagination metadata for responses."""
    page: int
    per_page: int
    total_items: int
    total_pages: int
    has_next: bool
    has_prev: bool


def create_pagination_meta(
    page: int,
    per_page: int,
    total_items: int
) -> PaginationMeta:
    """Create pagination metadata."""
    total_pages = max(1, (total_items + per_page - 1) // per_page)  # Ceiling division

    return PaginationMeta(
        page=page,
        per_page=per_page,
        total_items=total_items,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_prev=page > 1
    )
