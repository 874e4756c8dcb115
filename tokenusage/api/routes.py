"""
tokenusage - Usage API

Read endpoints over UsageQueryService and admin endpoints over
UsageAggregateService. The pipeline is taken from app.state.usage_pipeline.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from tokenusage.core.errors import ErrorDetails, ErrorType, SemanticError
from tokenusage.db.models import DimensionType, PeriodType, ensure_utc
from tokenusage.usage.query import UsageDetailQuery, UsageQueryFilter, UsageTrendQuery


router = APIRouter(prefix="/v1/usage", tags=["usage"])


# ============================================================
# Pydantic Models
# ============================================================

class AggregateRequest(BaseModel):
    """Request to fold a window of log rows into the statistics."""
    from_time: datetime
    to_time: datetime


class RebuildRequest(BaseModel):
    """Request to recompute one identity's statistics from its logs."""
    dimension_type: DimensionType
    dimension_id: str = Field(..., min_length=1, max_length=255)
    start_date: datetime
    end_date: datetime


class CleanupRequest(BaseModel):
    """Request to delete statistics older than a cutoff."""
    before: Optional[datetime] = None


# ============================================================
# Helper Functions
# ============================================================

def get_pipeline(request: Request):
    """Resolve the UsagePipeline attached to the application."""
    pipeline = getattr(request.app.state, "usage_pipeline", None)
    if pipeline is None:
        raise SemanticError(
            ErrorDetails(
                code="pipeline_unavailable",
                message="Usage pipeline is not configured on this application",
                type=ErrorType.SEMANTIC,
            )
        )
    return pipeline


def _validate_range(start: datetime, end: datetime) -> None:
    if ensure_utc(start) >= ensure_utc(end):
        raise SemanticError(
            ErrorDetails(
                code="invalid_range",
                message="start_date must be before end_date",
                type=ErrorType.SEMANTIC,
                details={"start_date": start.isoformat(), "end_date": end.isoformat()},
            )
        )


# ============================================================
# Query Endpoints
# ============================================================

@router.get("/{dimension_type}/{dimension_id}/statistics")
async def usage_statistics(
    dimension_type: str,
    dimension_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    model: Optional[List[str]] = Query(default=None),
    feature: Optional[List[str]] = Query(default=None),
    period: str = "day",
    pipeline=Depends(get_pipeline),
):
    """Totals and per-period sums for one identity."""
    if start_date and end_date:
        _validate_range(start_date, end_date)
    result = await pipeline.query.get_usage_statistics(
        DimensionType.parse(dimension_type),
        dimension_id,
        UsageQueryFilter(
            start_date=start_date,
            end_date=end_date,
            models=model,
            features=feature,
            aggregation_period=PeriodType.parse(period),
        ),
    )
    return result.to_dict()


@router.get("/{dimension_type}/trends")
async def usage_trends(
    dimension_type: str,
    start_date: datetime,
    end_date: datetime,
    dimension_id: Optional[str] = None,
    period: str = "day",
    model: Optional[List[str]] = Query(default=None),
    feature: Optional[List[str]] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    pipeline=Depends(get_pipeline),
):
    """Per-period sums, for one identity or summed over all of them."""
    _validate_range(start_date, end_date)
    result = await pipeline.query.get_usage_trends(
        UsageTrendQuery(
            start_date=start_date,
            end_date=end_date,
            dimension_type=DimensionType.parse(dimension_type),
            dimension_id=dimension_id,
            period_type=PeriodType.parse(period),
            models=model,
            features=feature,
            limit=limit,
        )
    )
    return result.to_dict()


@router.get("/{dimension_type}/top")
async def top_consumers(
    dimension_type: str,
    start_date: datetime,
    end_date: datetime,
    limit: int = Query(default=10, ge=1, le=100),
    pipeline=Depends(get_pipeline),
):
    _validate_range(start_date, end_date)
    items = await pipeline.query.get_top_consumers(
        DimensionType.parse(dimension_type), start_date, end_date, limit=limit
    )
    return {"data": [item.to_dict() for item in items]}


@router.get("/{dimension_type}/{dimension_id}/details")
async def usage_details(
    dimension_type: str,
    dimension_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    model: Optional[List[str]] = Query(default=None),
    feature: Optional[List[str]] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=1000),
    pipeline=Depends(get_pipeline),
):
    """Paginated raw log rows, newest first."""
    if start_date and end_date:
        _validate_range(start_date, end_date)
    result = await pipeline.query.get_usage_details(
        UsageDetailQuery(
            dimension_type=DimensionType.parse(dimension_type),
            dimension_id=dimension_id,
            start_date=start_date,
            end_date=end_date,
            models=model,
            features=feature,
            page=page,
            limit=limit,
        )
    )
    return result.to_dict()


# ============================================================
# Admin Endpoints
# ============================================================

@router.post("/aggregate")
async def aggregate(body: AggregateRequest, pipeline=Depends(get_pipeline)):
    result = await pipeline.aggregator.perform_incremental_aggregation(body.from_time, body.to_time)
    return result.to_dict()


@router.post("/rebuild")
async def rebuild(body: RebuildRequest, pipeline=Depends(get_pipeline)):
    result = await pipeline.aggregator.rebuild_aggregate_data(
        body.dimension_type,
        body.dimension_id,
        body.start_date,
        body.end_date,
    )
    return result.to_dict()


@router.post("/cleanup")
async def cleanup(body: CleanupRequest, pipeline=Depends(get_pipeline)):
    deleted = await pipeline.aggregator.cleanup_expired_data(body.before)
    return {"deleted_records": deleted}
