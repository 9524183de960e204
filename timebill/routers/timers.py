"""Timer endpoints - time tracking operations."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from timebill.errors import EngineError
from timebill.models.pagination import Page
from timebill.models.time_entry import EntryStatus, TimeEntry, TimeEntryStart, TimeEntryUpdate
from timebill.routers.auth import get_workspace, http_error
from timebill.services.workspace import Workspace
from timebill.utils.calculator import format_duration

router = APIRouter(prefix="/timers", tags=["timers"])


class SwitchResult(BaseModel):
    """Response model for switching sessions."""

    stopped: Optional[TimeEntry] = None
    started: TimeEntry


class Totals(BaseModel):
    """Tracked minutes for the current day and week."""

    today_minutes: int
    week_minutes: int
    today: str
    week: str


class ScopeSelection(BaseModel):
    """Request model for changing the scope selection."""

    scope_id: Optional[str] = None


@router.post("/start", response_model=TimeEntry)
async def start_timer(
    timer_start: TimeEntryStart,
    workspace: Workspace = Depends(get_workspace),
):
    """
    Start a new session.

    - Requires authentication
    - Only one session can be open at a time; use /switch to stop and start
    """
    try:
        return await workspace.timers.start(
            scope_id=timer_start.scope_id,
            description=timer_start.description,
            category=timer_start.category,
        )
    except EngineError as e:
        raise http_error(e)


@router.post("/switch", response_model=SwitchResult)
async def switch_timer(
    timer_start: TimeEntryStart,
    workspace: Workspace = Depends(get_workspace),
):
    """Stop the open session, if any, and start a new one."""
    try:
        stopped, started = await workspace.timers.switch(
            scope_id=timer_start.scope_id,
            description=timer_start.description,
            category=timer_start.category,
        )
        return SwitchResult(stopped=stopped, started=started)
    except EngineError as e:
        raise http_error(e)


@router.post("/pause", response_model=TimeEntry)
async def pause_timer(workspace: Workspace = Depends(get_workspace)):
    """Pause the active session."""
    try:
        return await workspace.timers.pause()
    except EngineError as e:
        raise http_error(e)


@router.post("/resume", response_model=TimeEntry)
async def resume_timer(workspace: Workspace = Depends(get_workspace)):
    """Resume the paused session."""
    try:
        return await workspace.timers.resume()
    except EngineError as e:
        raise http_error(e)


@router.post("/stop", response_model=TimeEntry)
async def stop_timer(workspace: Workspace = Depends(get_workspace)):
    """
    Stop the open session.

    - Requires authentication
    - Must have an active or paused session
    """
    try:
        return await workspace.timers.stop()
    except EngineError as e:
        raise http_error(e)


@router.get("/current", response_model=TimeEntry)
async def get_current_timer(workspace: Workspace = Depends(get_workspace)):
    """
    Get the open session, if any.

    - Returns 404 if no session is open
    """
    entry = workspace.timers.current
    if not entry:
        raise HTTPException(status_code=404, detail={"code": "NO_SESSION", "message": "No session running"})

    return entry


@router.get("/totals", response_model=Totals)
async def get_totals(workspace: Workspace = Depends(get_workspace)):
    """Minutes tracked today and this week, including the active session."""
    today = workspace.timers.total_today()
    week = workspace.timers.total_this_week()
    return Totals(
        today_minutes=today,
        week_minutes=week,
        today=format_duration(today),
        week=format_duration(week),
    )


@router.get("/entries", response_model=Page[TimeEntry])
async def list_entries(
    scope_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    status: Optional[list[EntryStatus]] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    workspace: Workspace = Depends(get_workspace),
):
    """
    List time entries for the authenticated actor.

    - Optional filters: scope_id, start_date, end_date, status
    - Results sorted by start_time descending (most recent first)
    """
    try:
        return await workspace.timers.list_entries(
            scope_id=scope_id,
            start_date=start_date,
            end_date=end_date,
            statuses=status,
            page=page,
            per_page=per_page,
        )
    except EngineError as e:
        raise http_error(e)


@router.patch("/entries/{entry_id}", response_model=TimeEntry)
async def update_entry(
    entry_id: str,
    entry_update: TimeEntryUpdate,
    workspace: Workspace = Depends(get_workspace),
):
    """
    Update the description of the current or a completed entry.

    - Actor must own the entry
    """
    try:
        return await workspace.timers.update_description(entry_id, entry_update.description)
    except EngineError as e:
        raise http_error(e)


@router.delete("/entries/{entry_id}")
async def delete_entry(
    entry_id: str,
    confirm: bool = Query(False),
    workspace: Workspace = Depends(get_workspace),
):
    """
    Delete a time entry.

    - Requires ?confirm=true
    - Hard delete (permanent); billed entries cannot be deleted
    """
    try:
        await workspace.timers.delete_record(entry_id, confirmed=confirm)
        return {"deleted": True, "id": entry_id}
    except EngineError as e:
        raise http_error(e)


@router.put("/scope")
async def select_scope(
    selection: ScopeSelection,
    workspace: Workspace = Depends(get_workspace),
):
    """Change the scope the mirrors, totals and statistics cover."""
    try:
        await workspace.select_scope(selection.scope_id)
        return {"scope_id": workspace.scope_id}
    except EngineError as e:
        raise http_error(e)
