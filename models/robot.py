"""
Robot model schemas for trading strategy management.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List, Literal
from datetime import datetime
from uuid import UUID
from enum import Enum


class StrategyType(str, Enum):
    """Trading strategy classification."""
    TREND = "Trend"
    SCALPING = "Scalping"
    GRID = "Grid"
    MARTINGALE = "Martingale"
    CUSTOM = "Custom"


class MessageRole(str, Enum):
    """Message role in chat history."""
    USER = "user"
    MODEL = "model"
    SYSTEM = "system"


class ChatMessage(BaseModel):
    """Chat message stored in the chat_history column."""
    id: str
    role: MessageRole
    content: str = Field(..., max_length=10_000)
    timestamp: int
    thinking: Optional[str] = None


def _check_name(value: str) -> str:
    value = value.strip()
    if len(value) < 3:
        raise ValueError("Robot name must be at least 3 characters long")
    return value


class RobotBase(BaseModel):
    """Base robot model."""
    name: str = Field(..., max_length=100)
    description: str = Field(default="", max_length=1000)
    code: str = Field(..., min_length=1)
    strategy_type: StrategyType = StrategyType.CUSTOM
    strategy_params: Dict[str, Any] = {}
    backtest_settings: Dict[str, Any] = {}
    analysis_result: Dict[str, Any] = {}
    chat_history: List[ChatMessage] = []
    is_public: bool = False

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _check_name(v)


class RobotCreate(RobotBase):
    """Robot creation model."""
    user_id: UUID


class RobotUpdate(BaseModel):
    """Robot update model. Only set fields are written."""
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    code: Optional[str] = Field(None, min_length=1)
    strategy_type: Optional[StrategyType] = None
    strategy_params: Optional[Dict[str, Any]] = None
    backtest_settings: Optional[Dict[str, Any]] = None
    analysis_result: Optional[Dict[str, Any]] = None
    chat_history: Optional[List[ChatMessage]] = None
    is_public: Optional[bool] = None
    is_active: Optional[bool] = None
    version: Optional[int] = Field(None, ge=1)

    @field_validator("name")
    @classmethod
    def _name(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _check_name(v)


class Robot(RobotBase):
    """Robot response model, one row of the robots table."""
    id: UUID
    user_id: UUID
    version: int = 1
    is_active: bool = True
    view_count: int = 0
    copy_count: int = 0
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {
        "from_attributes": True,
    }


SortColumn = Literal["created_at", "updated_at", "name"]
SortOrder = Literal["asc", "desc"]


class RobotFilter(BaseModel):
    """Robot list filters."""
    user_id: Optional[UUID] = None
    strategy_type: Optional[StrategyType] = None
    is_active: Optional[bool] = None
    is_public: Optional[bool] = None
    search: Optional[str] = Field(None, max_length=100)
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    sort: SortColumn = "created_at"
    order: SortOrder = "desc"
    include_deleted: bool = False


class RobotListResponse(BaseModel):
    """Paginated robot list response."""
    items: List[Robot]
    total: int
    page: int
    per_page: int
    pages: int
    has_next: bool
    has_prev: bool


class BulkImportRequest(BaseModel):
    """Robots to import in one request."""
    robots: List[RobotCreate] = Field(..., min_length=1, max_length=1000)


class BulkImportResponse(BaseModel):
    """Bulk import outcome."""
    total: int
    succeeded: int
    failed: int
    partial_failure: bool
    errors: List[Dict[str, Any]] = []
