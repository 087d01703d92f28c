"""
Robot repository for database operations.
All reads and writes go through the QueryOptimizer so they share the cache, pool and retry policy.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from models.query import FilterCondition, FilterOperator, QuerySpec, SortKey
from models.robot import Robot, RobotCreate, RobotFilter, RobotListResponse, RobotUpdate
from monitoring.metrics import DataLayerMetrics
from utils.batch_operations import BatchResult, run_batch
from utils.db_query_optimizer import QueryOptimizer
from utils.exceptions import BackendError, NotFoundError, TransportError
from utils.pagination import PaginationParams, create_pagination_meta

logger = logging.getLogger(__name__)

TABLE = "robots"
SEARCH_WILDCARDS = str.maketrans("", "", "*%")


def _rejected_before_commit(error: BaseException) -> bool:
    # PostgREST runs one insert per statement; only transport failures leave the outcome unknown.
    return not isinstance(error, TransportError)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RobotRepository:
    """Repository for robot data operations."""

    def __init__(
        self,
        optimizer: QueryOptimizer,
        batch_size: int = 50,
        batch_concurrency: int = 1,
        metrics: Optional[DataLayerMetrics] = None,
    ):
        self.optimizer = optimizer
        self.batch_size = batch_size
        self.batch_concurrency = batch_concurrency
        self.metrics = metrics

    @staticmethod
    def _row_to_robot(row: Dict[str, Any]) -> Robot:
        # Nullable JSON columns fall back to model defaults
        return Robot.model_validate({k: v for k, v in row.items() if v is not None})

    @staticmethod
    def build_list_spec(filters: RobotFilter) -> QuerySpec:
        conditions: List[FilterCondition] = []
        if not filters.include_deleted:
            conditions.append(FilterCondition(column="deleted_at", op=FilterOperator.IS, value=None))
        if filters.user_id is not None:
            conditions.append(FilterCondition(column="user_id", value=str(filters.user_id)))
        if filters.strategy_type is not None:
            conditions.append(FilterCondition(column="strategy_type", value=filters.strategy_type.value))
        if filters.is_active is not None:
            conditions.append(FilterCondition(column="is_active", op=FilterOperator.IS, value=filters.is_active))
        if filters.is_public is not None:
            conditions.append(FilterCondition(column="is_public", op=FilterOperator.IS, value=filters.is_public))
        if filters.created_after is not None:
            conditions.append(FilterCondition(column="created_at", op=FilterOperator.GTE, value=filters.created_after.isoformat()))
        if filters.created_before is not None:
            conditions.append(FilterCondition(column="created_at", op=FilterOperator.LT, value=filters.created_before.isoformat()))

        search = (filters.search or "").translate(SEARCH_WILDCARDS).strip()
        if search:
            conditions.append(FilterCondition(column="name", op=FilterOperator.ILIKE, value=f"*{search}*"))

        return QuerySpec(
            table=TABLE,
            filters=conditions,
            order_by=[SortKey(column=filters.sort, descending=filters.order == "desc")],
            query_type="robots.list",
        )

    async def list_robots(self, filters: RobotFilter, pagination: PaginationParams) -> RobotListResponse:
        """List robots matching the filters, one page at a time."""
        spec = pagination.apply(self.build_list_spec(filters))
        result = await self.optimizer.execute(spec)

        total = result.total if result.total is not None else pagination.offset + len(result.rows)
        meta = create_pagination_meta(pagination.page, pagination.per_page, total)
        return RobotListResponse(
            items=[self._row_to_robot(row) for row in result.rows],
            total=meta.total_items,
            page=meta.page,
            per_page=meta.per_page,
            pages=meta.total_pages,
            has_next=meta.has_next,
            has_prev=meta.has_prev,
        )

    async def get_robot(self, robot_id: UUID) -> Robot:
        spec = QuerySpec(
            table=TABLE,
            filters=[
                FilterCondition(column="id", value=str(robot_id)),
                FilterCondition(column="deleted_at", op=FilterOperator.IS, value=None),
            ],
            limit=1,
            query_type="robots.get",
        )
        result = await self.optimizer.execute(spec)
        if not result.rows:
            raise NotFoundError("robot", str(robot_id))
        return self._row_to_robot(result.rows[0])

    async def create_robot(self, robot_data: RobotCreate) -> Robot:
        """Create a new robot."""
        logger.info(f"🏗️ [ROBOT_REPO] Creating robot '{robot_data.name}' for user {robot_data.user_id}")
        rows = await self.optimizer.mutate(TABLE, "insert", rows=[robot_data.model_dump(mode="json")])
        if not rows:
            raise BackendError("Failed to create robot - no data returned")
        robot = self._row_to_robot(rows[0])
        logger.info(f"✅ [ROBOT_REPO] Robot {robot.id} created")
        return robot

    async def update_robot(self, robot_id: UUID, robot_data: RobotUpdate) -> Robot:
        """Apply the fields set on robot_data."""
        values = robot_data.model_dump(mode="json", exclude_unset=True)
        if not values:
            return await self.get_robot(robot_id)
        values["updated_at"] = _now()

        rows = await self.optimizer.mutate(
            TABLE,
            "update",
            values=values,
            filters=self._live_robot(robot_id),
        )
        if not rows:
            raise NotFoundError("robot", str(robot_id))
        return self._row_to_robot(rows[0])

    async def delete_robot(self, robot_id: UUID) -> None:
        """Soft delete: the row stays, stamped with deleted_at."""
        now = _now()
        rows = await self.optimizer.mutate(
            TABLE,
            "update",
            values={"deleted_at": now, "is_active": False, "updated_at": now},
            filters=self._live_robot(robot_id),
        )
        if not rows:
            raise NotFoundError("robot", str(robot_id))
        logger.info(f"🗑️ [ROBOT_REPO] Robot {robot_id} soft-deleted")

    async def bulk_import(self, robots: List[RobotCreate]) -> BatchResult:
        """Insert robots in chunks; bad records are isolated and reported, not raised."""
        rows = [robot.model_dump(mode="json") for robot in robots]

        async def insert_chunk(chunk: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            return await self.optimizer.mutate(TABLE, "insert", rows=chunk)

        result = await run_batch(
            rows,
            insert_chunk,
            batch_size=self.batch_size,
            concurrency=self.batch_concurrency,
            isolate_on=_rejected_before_commit,
        )
        if self.metrics is not None:
            self.metrics.record_batch(len(result.succeeded), len(result.failed))
        return result

    @staticmethod
    def _live_robot(robot_id: UUID) -> List[FilterCondition]:
        return [
            FilterCondition(column="id", value=str(robot_id)),
            FilterCondition(column="deleted_at", op=FilterOperator.IS, value=None),
        ]
