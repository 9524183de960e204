"""Time entry model definitions."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, model_validator


class TaskCategory(str, Enum):
    """Kind of work a time entry is billed as."""

    DEVELOPMENT = "development"
    DESIGN = "design"
    MANAGEMENT = "management"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    MEETING = "meeting"
    RESEARCH = "research"
    SUPPORT = "support"
    OTHER = "other"


class EntryStatus(str, Enum):
    """Lifecycle states of a tracked session."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_STATUSES = (EntryStatus.ACTIVE, EntryStatus.PAUSED)


class TimeEntryStart(BaseModel):
    """Request model for starting a tracking session."""

    scope_id: str
    description: str = ""
    category: Optional[TaskCategory] = None


class TimeEntryUpdate(BaseModel):
    """Time entry update model."""

    description: str


class TimeEntry(BaseModel):
    """One unit of tracked work."""

    id: Optional[str] = None
    actor_id: str
    scope_id: str
    description: str = ""
    category: TaskCategory = TaskCategory.DEVELOPMENT
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: int = 0
    rate_per_minute: float = 0.0
    amount: int = 0
    status: EntryStatus = EntryStatus.ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_end_after_start(self) -> "TimeEntry":
        """Completed entries must not end before they start."""
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self

    @property
    def is_open(self) -> bool:
        """True while the entry is active or paused."""
        return self.status in OPEN_STATUSES
