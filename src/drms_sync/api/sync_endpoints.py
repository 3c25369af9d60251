"""Operator endpoints for the local sync engine.

Conflict history, statistics, CSV export and manual resolution, plus queue
and engine status. Components are read from ``app.state``.
"""

import asyncio
import io
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from drms_sync.models.sync_queue import EntityType, QueueStatus
from drms_sync.schemas.sync import (
    ConflictFilters,
    ConflictStats,
    QueueStats,
    SyncStatusSnapshot,
)
from drms_sync.sync.conflict_resolver import ConflictResolver
from drms_sync.sync.conflict_store import ConflictStore
from drms_sync.sync.engine import SyncEngine
from drms_sync.sync.queue import SyncQueue
from drms_sync.utils.exceptions import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
)
from drms_sync.utils.logging import get_logger
from drms_sync.utils.pagination import PaginatedResponse

router = APIRouter(prefix="/sync", tags=["sync"])
logger = get_logger(__name__)

# Query parameters
query_entity_type_dependency = Query(None, alias="entityType", description="Entity type")
query_entity_uuid_dependency = Query(None, alias="entityUuid", description="Entity id")
query_resolved_dependency = Query(None, description="Resolution state")
query_date_from_dependency = Query(None, alias="dateFrom", description="Created on or after")
query_date_to_dependency = Query(None, alias="dateTo", description="Created on or before")
query_page_dependency = Query(default=1, ge=1, description="Page number")
query_page_size_dependency = Query(
    default=20, ge=1, le=100, alias="pageSize", description="Items per page"
)
query_queue_status_dependency = Query(None, alias="status", description="Queue status")


# Component accessors
def get_conflict_store(request: Request) -> ConflictStore:
    """Conflict store attached to the application."""
    store: ConflictStore = request.app.state.conflict_store
    return store


def get_conflict_resolver(request: Request) -> ConflictResolver:
    """Conflict resolver attached to the application."""
    resolver: ConflictResolver = request.app.state.conflict_resolver
    return resolver


def get_sync_queue(request: Request) -> SyncQueue:
    """Sync queue attached to the application."""
    queue: SyncQueue = request.app.state.sync_queue
    return queue


def get_sync_engine(request: Request) -> SyncEngine:
    """Running sync engine; 503 when the API runs without one."""
    engine: Optional[SyncEngine] = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine is not running",
        )
    return engine


def get_conflict_filters(
    entity_type: Optional[EntityType] = query_entity_type_dependency,
    entity_uuid: Optional[str] = query_entity_uuid_dependency,
    resolved: Optional[bool] = query_resolved_dependency,
    date_from: Optional[datetime] = query_date_from_dependency,
    date_to: Optional[datetime] = query_date_to_dependency,
) -> ConflictFilters:
    """Build and validate conflict filters from query parameters."""
    try:
        return ConflictFilters(
            entity_type=entity_type,
            entity_uuid=entity_uuid,
            resolved=resolved,
            date_from=date_from,
            date_to=date_to,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.errors()[0]["msg"],
        ) from e


store_dependency = Depends(get_conflict_store)
resolver_dependency = Depends(get_conflict_resolver)
queue_dependency = Depends(get_sync_queue)
engine_dependency = Depends(get_sync_engine)
filters_dependency = Depends(get_conflict_filters)


# Request/Response Models
class ManualResolutionRequest(BaseModel):
    """Operator override for an unresolved conflict."""

    resolved_data: Dict[str, Any] = Field(
        ..., alias="resolvedData", description="Version to keep"
    )
    resolved_by: str = Field(
        ..., alias="resolvedBy", min_length=1, description="Operator identifier"
    )

    model_config = ConfigDict(populate_by_name=True)


class ReprioritizeRequest(BaseModel):
    """New priority for every waiting item of one entity family."""

    entity_type: EntityType = Field(..., alias="entityType")
    priority: int = Field(..., ge=0, description="Lower numbers sync first")

    model_config = ConfigDict(populate_by_name=True)


class QueueActionResponse(BaseModel):

    """Result of an operator queue action."""

    affected: int = Field(..., description="Number of queue items changed")
    sync_triggered: bool = Field(False, alias="syncTriggered")

    model_config = ConfigDict(populate_by_name=True)


# Conflicts
@router.get(
    "/conflicts",
    response_model=PaginatedResponse[Dict[str, Any]],
    summary="List conflicts",
)
async def list_conflicts(
    filters: ConflictFilters = filters_dependency,
    page: int = query_page_dependency,
    page_size: int = query_page_size_dependency,
    store: ConflictStore = store_dependency,
) -> PaginatedResponse[Dict[str, Any]]:
    """Filtered conflict history, newest first."""
    return store.query(filters, page=page, page_size=page_size)


@router.get(
    "/conflicts/summary",
    response_model=ConflictStats,
    summary="Conflict statistics",
)
async def get_conflict_summary(
    resolver: ConflictResolver = resolver_dependency,
) -> ConflictStats:
    """Totals, resolution rate, counts by type and the latest conflicts."""
    return resolver.get_conflict_stats()


@router.get("/conflicts/export", summary="Export conflicts as CSV")
async def export_conflicts(
    filters: ConflictFilters = filters_dependency,
    store: ConflictStore = store_dependency,
) -> StreamingResponse:
    """CSV attachment of the conflicts matching the filters."""
    data = store.export_csv(filters)
    filename = store.export_filename(filters)

    return StreamingResponse(
        io.StringIO(data),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/conflicts/{conflict_id}", summary="Get a conflict")
async def get_conflict(
    conflict_id: str,
    store: ConflictStore = store_dependency,
) -> Dict[str, Any]:
    """Full conflict record including both versions."""
    record = store.get(conflict_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Conflict {conflict_id} not found",
        )
    return record.to_dict()


@router.post("/conflicts/{conflict_id}/resolve", summary="Resolve a conflict manually")
async def resolve_conflict(
    conflict_id: str,
    request: ManualResolutionRequest,
    resolver: ConflictResolver = resolver_dependency,
) -> Dict[str, Any]:
    """Apply an operator decision to an unresolved conflict."""
    try:
        record = resolver.resolve_manually(
            conflict_id, request.resolved_data, request.resolved_by
        )
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ConflictAlreadyResolvedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    logger.info(
        "conflict_resolved_by_operator",
        conflict_id=conflict_id,
        resolved_by=request.resolved_by,
    )
    return record.to_dict()


# Queue
@router.get("/queue/stats", response_model=QueueStats, summary="Queue statistics")
async def get_queue_stats(queue: SyncQueue = queue_dependency) -> QueueStats:
    """Counts by status, type and action."""
    return queue.stats()


@router.get(
    "/queue",
    response_model=PaginatedResponse[Dict[str, Any]],
    summary="List queue items",
)
async def list_queue_items(
    queue_status: Optional[QueueStatus] = query_queue_status_dependency,
    entity_type: Optional[EntityType] = query_entity_type_dependency,
    page: int = query_page_dependency,
    page_size: int = query_page_size_dependency,
    queue: SyncQueue = queue_dependency,
) -> PaginatedResponse[Dict[str, Any]]:
    """Queue items in processing order."""
    return queue.list_items(
        status=queue_status, entity_type=entity_type, page=page, page_size=page_size
    )


@router.post(
    "/queue/retry-failed",
    response_model=QueueActionResponse,
    summary="Retry failed items",
)
async def retry_failed_items(
    engine: SyncEngine = engine_dependency,
) -> QueueActionResponse:
    """Reset failed items to pending, ignoring backoff, and start a drain."""
    failed = engine.queue.stats().failed
    engine.retry_failed_items()
    return QueueActionResponse(affected=failed, sync_triggered=engine.is_syncing)


@router.delete(
    "/queue/failed",
    response_model=QueueActionResponse,
    summary="Discard failed items",
)
async def clear_failed_items(
    engine: SyncEngine = engine_dependency,
) -> QueueActionResponse:
    """Delete every failed item from the queue."""
    return QueueActionResponse(affected=engine.clear_failed_items())


@router.post(
    "/queue/prioritize",
    response_model=QueueActionResponse,
    summary="Reprioritize an entity family",
)
async def reprioritize_entity_type(
    request: ReprioritizeRequest,
    queue: SyncQueue = queue_dependency,
) -> QueueActionResponse:
    """Change the priority of every pending or failed item of one entity type."""
    affected = queue.reprioritize_type(request.entity_type, request.priority)
    return QueueActionResponse(affected=affected)


@router.delete(
    "/queue/completed",
    response_model=QueueActionResponse,
    summary="Prune completed items",
)
async def prune_completed_items(
    queue: SyncQueue = queue_dependency,
) -> QueueActionResponse:
    """Delete synced and conflicted items past the retention window."""
    return QueueActionResponse(affected=queue.prune_completed())



# Engine
@router.get("/status", response_model=SyncStatusSnapshot, summary="Engine status")
async def get_sync_status(engine: SyncEngine = engine_dependency) -> SyncStatusSnapshot:
    """Current engine snapshot."""
    return engine.status


@router.post(
    "/trigger",
    response_model=SyncStatusSnapshot,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a drain",
)
async def trigger_sync(engine: SyncEngine = engine_dependency) -> SyncStatusSnapshot:
    """Start a drain, or join the one in progress."""
    engine.trigger_manual_sync()
    # Let the drain task start before reporting
    await asyncio.sleep(0)
    return engine.status


@router.post("/resume", response_model=SyncStatusSnapshot, summary="Resume after a halt")
async def resume_sync(engine: SyncEngine = engine_dependency) -> SyncStatusSnapshot:
    """Clear a halt caused by corrupt queue state."""
    engine.resume()
    return engine.status
