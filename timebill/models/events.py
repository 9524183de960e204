"""Change notification model definitions."""
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class ChangeType(str, Enum):
    """Kinds of Data Store change notifications."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ChangeEvent(BaseModel):
    """
    A push notification about one record.

    ``record`` is the full document for ``created``, the changed fields for
    ``updated`` and may be empty for ``deleted``. ``timestamp`` orders
    conflicting writes during reconciliation.
    """

    type: ChangeType
    collection: str
    record_id: str
    record: dict[str, Any] = {}
    timestamp: datetime
