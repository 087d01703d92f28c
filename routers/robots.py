"""
Robots router for CRUD and bulk import of trading robots.
Typed data layer errors are mapped to HTTP responses by the app's exception handlers.
"""
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response
from typing import Literal, Optional
from uuid import UUID
import logging

from models.robot import (
    BulkImportRequest,
    BulkImportResponse,
    Robot,
    RobotCreate,
    RobotFilter,
    RobotListResponse,
    RobotUpdate,
    StrategyType,
)
from repositories.robot_repository import RobotRepository
from routers.dependencies import get_robot_repository
from utils.exceptions import QueryValidationError
from utils.pagination import MAX_PER_PAGE, PaginationParams

router = APIRouter(prefix="/api/v1/robots", tags=["robots"])
logger = logging.getLogger(__name__)


def _strategy_type(value: Optional[str]) -> Optional[StrategyType]:
    if not value or value == "All":
        return None
    try:
        return StrategyType(value)
    except ValueError:
        raise QueryValidationError(f"Unknown strategy type: {value}", field="type")


@router.get("", response_model=RobotListResponse)
async def list_robots(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PER_PAGE),
    search: Optional[str] = Query(None, max_length=100),
    type: Optional[str] = Query(None, description="Strategy type or 'All'"),
    sort: Literal["created_at", "updated_at", "name"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
    user_id: Optional[UUID] = None,
    robots: RobotRepository = Depends(get_robot_repository),
):
    """List robots with pagination, search and filtering."""
    filters = RobotFilter(
        user_id=user_id,
        strategy_type=_strategy_type(type),
        search=search,
        sort=sort,
        order=order,
    )
    result = await robots.list_robots(filters, PaginationParams(page=page, per_page=limit))
    logger.info(f"📋 [ROBOTS] Listed {len(result.items)} of {result.total} robots (page {page})")
    return result


@router.post("", response_model=Robot, status_code=status.HTTP_201_CREATED)
async def create_robot(
    robot_data: RobotCreate,
    robots: RobotRepository = Depends(get_robot_repository),
):
    """Create a new robot."""
    return await robots.create_robot(robot_data)


@router.post("/bulk", response_model=BulkImportResponse)
async def bulk_import_robots(
    request_data: BulkImportRequest,
    robots: RobotRepository = Depends(get_robot_repository),
):
    """Import robots in chunks. Bad records are reported, the rest are stored."""
    result = await robots.bulk_import(request_data.robots)
    logger.info(
        f"📦 [ROBOTS] Bulk import: {len(result.succeeded)} succeeded, {len(result.failed)} failed"
    )
    return BulkImportResponse(
        total=result.total,
        succeeded=len(result.succeeded),
        failed=len(result.failed),
        partial_failure=result.partial_failure,
        errors=[
            {"name": failure.item.get("name"), **failure.to_dict()}
            for failure in result.failed
        ],
    )


@router.get("/{robot_id}", response_model=Robot)
async def get_robot(
    robot_id: UUID,
    robots: RobotRepository = Depends(get_robot_repository),
):
    """Get robot by ID."""
    return await robots.get_robot(robot_id)


@router.patch("/{robot_id}", response_model=Robot)
async def update_robot(
    robot_id: UUID,
    robot_data: RobotUpdate,
    robots: RobotRepository = Depends(get_robot_repository),
):
    """Update the fields present in the request body."""
    return await robots.update_robot(robot_id, robot_data)


@router.delete("/{robot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_robot(
    robot_id: UUID,
    robots: RobotRepository = Depends(get_robot_repository),
):
    """Soft-delete a robot."""
    await robots.delete_robot(robot_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
