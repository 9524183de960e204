"""Data Store contract consumed by the engine."""
from abc import ABC, abstractmethod
from typing import Any, Optional

from timebill.models.events import ChangeEvent
from timebill.models.pagination import Page

TIME_ENTRIES = "time_entries"
PAYMENTS = "payments"

Record = dict[str, Any]
Filter = dict[str, Any]
Sort = list[tuple[str, int]]

ASCENDING = 1
DESCENDING = -1


class Subscription(ABC):
    """
    Stream of change notifications for one collection.

    Iterate with ``async for``; iteration ends once ``close()`` is called.
    """

    def __aiter__(self) -> "Subscription":
        return self

    @abstractmethod
    async def __anext__(self) -> ChangeEvent:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering events and release the underlying resources."""


class DataStore(ABC):
    """
    CRUD plus change notifications over named collections of records.

    Records are plain dicts whose identity is the ``id`` key, assigned by the
    store on ``create``. Filters use a MongoDB-style subset: equality,
    ``$in``, ``$nin``, ``$ne``, ``$gt``, ``$gte``, ``$lt``, ``$lte`` and
    ``$regex`` with ``$options``. Failures raise ``StoreError``; unknown ids
    raise ``NotFoundError``.
    """

    @abstractmethod
    async def create(self, collection: str, record: Record) -> Record:
        """Insert ``record`` and return it with its ``id``."""

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        """Fetch one record, or None when it does not exist."""

    @abstractmethod
    async def update(self, collection: str, record_id: str, patch: Record) -> Record:
        """Set the fields of ``patch`` and return the updated record."""

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> bool:
        """Remove a record."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        page: int = 1,
        per_page: Optional[int] = None,
    ) -> Page[Record]:
        """
        Matching records, sorted and paginated.

        ``per_page=None`` returns every match as a single page.
        """

    @abstractmethod
    async def subscribe(self, collection: str, filter: Optional[Filter] = None) -> Subscription:
        """Open a change notification stream for records matching ``filter``."""
