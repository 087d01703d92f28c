"""
Declarative query specification models.
Callers describe filters, sorting and pagination; the optimizer turns them into PostgREST queries.
"""
import re
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(value: str, what: str) -> str:
    if not IDENTIFIER.match(value):
        raise ValueError(f"Invalid {what} name: {value!r}")
    return value


class FilterOperator(str, Enum):
    """PostgREST filter operators supported by the optimizer."""
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    IN = "in"
    IS = "is"


class FilterCondition(BaseModel):
    """Single column filter."""
    column: str
    op: FilterOperator = FilterOperator.EQ
    value: Any = None

    @field_validator("column")
    @classmethod
    def _column(cls, v: str) -> str:
        return _check_identifier(v, "column")

    @model_validator(mode="after")
    def _value_matches_operator(self) -> "FilterCondition":
        if self.op == FilterOperator.IN:
            if not isinstance(self.value, (list, tuple, set)) or not self.value:
                raise ValueError(f"'in' filter on {self.column} needs a non-empty list")
        elif self.op == FilterOperator.IS:
            if self.value not in (None, True, False):
                raise ValueError(f"'is' filter on {self.column} accepts only null, true or false")
        elif self.value is None:
            raise ValueError(f"'{self.op.value}' filter on {self.column} needs a value; use 'is' for null")
        elif isinstance(self.value, (dict, list, tuple, set)):
            raise ValueError(f"'{self.op.value}' filter on {self.column} needs a scalar value")
        return self


class SortKey(BaseModel):
    """Sort column and direction."""
    column: str
    descending: bool = False

    @field_validator("column")
    @classmethod
    def _column(cls, v: str) -> str:
        return _check_identifier(v, "column")


class QuerySpec(BaseModel):
    """Declarative read query: table, projection, filters, ordering and pagination."""
    table: str
    select: List[str] = Field(default_factory=lambda: ["*"])
    filters: List[FilterCondition] = Field(default_factory=list)
    order_by: List[SortKey] = Field(default_factory=list)
    limit: Optional[int] = Field(default=None, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    count: bool = False
    query_type: Optional[str] = None

    @field_validator("table")
    @classmethod
    def _table(cls, v: str) -> str:
        return _check_identifier(v, "table")

    @field_validator("select")
    @classmethod
    def _select(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("select must name at least one column")
        for column in v:
            if column != "*":
                _check_identifier(column, "column")
        return v

    def paginate(self, page: int, per_page: int) -> "QuerySpec":
        """Copy of this spec limited to one 1-based page."""
        if page < 1 or per_page < 1:
            raise ValueError("page and per_page must be >= 1")
        return self.model_copy(update={"limit": per_page, "offset": (page - 1) * per_page})

    @property
    def resolved_query_type(self) -> str:
        return self.query_type or f"{self.table}.select"
