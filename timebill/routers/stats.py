"""Statistics endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from timebill.errors import EngineError
from timebill.models.stats import Forecast, MovingAverage, PaymentStats, TaxReport
from timebill.routers.auth import get_workspace, http_error
from timebill.services.workspace import Workspace

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("", response_model=PaymentStats)
async def get_stats(workspace: Workspace = Depends(get_workspace)):
    """
    Payment statistics for the current scope selection.

    - Earnings count paid payments only
    - Recomputed when payments or entry statuses change
    """
    return workspace.stats.stats


@router.post("/refresh", response_model=PaymentStats)
async def refresh_stats(workspace: Workspace = Depends(get_workspace)):
    """Reload from the store and recompute."""
    try:
        return await workspace.stats.refresh()
    except EngineError as e:
        raise http_error(e)


@router.get("/forecast", response_model=Forecast)
async def get_forecast(
    months_ahead: int = Query(3, ge=1, le=24),
    workspace: Workspace = Depends(get_workspace),
):
    """
    Earnings forecast from the trailing months' average growth.

    - confidence (0-100) is a heuristic based on how regular earnings were
    """
    return workspace.stats.forecast(months_ahead)


@router.get("/moving-average", response_model=MovingAverage)
async def get_moving_average(
    periods: int = Query(3, ge=1, le=24),
    workspace: Workspace = Depends(get_workspace),
):
    average = workspace.stats.moving_average(periods)
    if average is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_ENOUGH_DATA", "message": f"Need {periods} months of data"},
        )
    return average


@router.get("/tax-report", response_model=TaxReport)
async def get_tax_report(
    year: int = Query(..., ge=2000, le=2100),
    quarter: Optional[int] = Query(None, ge=1, le=4),
    workspace: Workspace = Depends(get_workspace),
):
    """Income and tax owed for a year, or one quarter of it."""
    return workspace.stats.tax_report(year, quarter)
