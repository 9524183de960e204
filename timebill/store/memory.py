"""In-process Data Store, used for local runs and tests."""
import asyncio
import copy
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from bson import ObjectId

from timebill.errors import NotFoundError
from timebill.models.events import ChangeEvent, ChangeType
from timebill.models.pagination import Page, Pagination
from timebill.store.base import DataStore, Filter, Record, Sort, Subscription

logger = logging.getLogger(__name__)


def _equals(value: Any, expected: Any) -> bool:
    # A scalar matches a list field when the list contains it, as in MongoDB
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _compare(op: str, value: Any, arg: Any) -> bool:
    if value is None:
        return False
    if op == "$gt":
        return value > arg
    if op == "$gte":
        return value >= arg
    if op == "$lt":
        return value < arg
    return value <= arg


def _apply(op: str, value: Any, arg: Any, condition: dict) -> bool:
    if op == "$in":
        return any(_equals(value, candidate) for candidate in arg)
    if op == "$nin":
        return not any(_equals(value, candidate) for candidate in arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return _compare(op, value, arg)
    if op == "$regex":
        flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
        return isinstance(value, str) and re.search(arg, value, flags) is not None
    if op == "$options":
        return True
    raise ValueError(f"Unsupported filter operator: {op}")


def matches(record: Record, filter: Optional[Filter]) -> bool:
    """
    Whether ``record`` satisfies a MongoDB-style ``filter``.

    Examples:
        >>> matches({"status": "paid", "amount_cents": 500}, {"amount_cents": {"$gte": 100}})
        True
        >>> matches({"ids": ["a", "b"]}, {"ids": {"$in": ["c"]}})
        False
    """
    for field, condition in (filter or {}).items():
        if field == "$or":
            if not any(matches(record, sub) for sub in condition):
                return False
            continue

        value = record.get(field)
        if isinstance(condition, dict) and any(key.startswith("$") for key in condition):
            if not all(_apply(op, value, arg, condition) for op, arg in condition.items()):
                return False
        elif not _equals(value, condition):
            return False
    return True


def _sorted(records: list[Record], sort: Optional[Sort]) -> list[Record]:
    # Stable multi-key sort, applied from the least significant key; missing values go last
    for field, direction in reversed(sort or []):
        present = [r for r in records if r.get(field) is not None]
        missing = [r for r in records if r.get(field) is None]
        present.sort(key=lambda r: r[field], reverse=direction < 0)
        records = present + missing
    return records


class QueueSubscription(Subscription):
    """Subscription fed by ``InMemoryDataStore`` through an asyncio queue."""

    def __init__(self, store: "InMemoryDataStore", collection: str, filter: Optional[Filter]):
        self.store = store
        self.collection = collection
        self.filter = filter
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def __anext__(self) -> ChangeEvent:
        if self._closed:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.store._unsubscribe(self)
        self._queue.put_nowait(None)


class InMemoryDataStore(DataStore):
    """
    Dict-backed store that fans out change notifications to subscribers.

    ``updated`` notifications carry only the patched fields, like a MongoDB
    change stream's ``updatedFields``.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._collections: dict[str, dict[str, Record]] = {}
        self._subscriptions: list[QueueSubscription] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _records(self, collection: str) -> dict[str, Record]:
        return self._collections.setdefault(collection, {})

    @property
    def subscription_count(self) -> int:
        """Number of open subscriptions."""
        return len(self._subscriptions)

    def _unsubscribe(self, subscription: QueueSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _publish(self, collection: str, event: ChangeEvent, full_record: Record) -> None:
        for subscription in list(self._subscriptions):
            if subscription.collection == collection and matches(full_record, subscription.filter):
                subscription.push(event)

    def _timestamp(self, record: Record) -> datetime:
        value = record.get("updated_at")
        return value if isinstance(value, datetime) else self._clock()

    async def create(self, collection: str, record: Record) -> Record:
        stored = copy.deepcopy(record)
        stored["id"] = stored.get("id") or str(ObjectId())
        self._records(collection)[stored["id"]] = stored

        self._publish(
            collection,
            ChangeEvent(
                type=ChangeType.CREATED,
                collection=collection,
                record_id=stored["id"],
                record=copy.deepcopy(stored),
                timestamp=self._timestamp(stored),
            ),
            stored,
        )
        return copy.deepcopy(stored)

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        record = self._records(collection).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(self, collection: str, record_id: str, patch: Record) -> Record:
        records = self._records(collection)
        if record_id not in records:
            raise NotFoundError(f"Record {record_id} not found in {collection}")

        changes = copy.deepcopy({k: v for k, v in patch.items() if k != "id"})
        updated = {**records[record_id], **changes}
        records[record_id] = updated

        self._publish(
            collection,
            ChangeEvent(
                type=ChangeType.UPDATED,
                collection=collection,
                record_id=record_id,
                record=copy.deepcopy(changes),
                timestamp=self._timestamp(changes),
            ),
            updated,
        )
        return copy.deepcopy(updated)

    async def delete(self, collection: str, record_id: str) -> bool:
        records = self._records(collection)
        if record_id not in records:
            raise NotFoundError(f"Record {record_id} not found in {collection}")

        removed = records.pop(record_id)
        self._publish(
            collection,
            ChangeEvent(
                type=ChangeType.DELETED,
                collection=collection,
                record_id=record_id,
                timestamp=self._clock(),
            ),
            removed,
        )
        return True

    async def query(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        page: int = 1,
        per_page: Optional[int] = None,
    ) -> Page[Record]:
        found = [r for r in self._records(collection).values() if matches(r, filter)]
        found = _sorted(found, sort)
        total = len(found)

        if per_page is None:
            items = found
            pagination = Pagination.build(1, max(total, 1), total)
        else:
            start = (page - 1) * per_page
            items = found[start:start + per_page]
            pagination = Pagination.build(page, per_page, total)

        return Page[Record](items=copy.deepcopy(items), pagination=pagination)

    async def subscribe(self, collection: str, filter: Optional[Filter] = None) -> Subscription:
        subscription = QueueSubscription(self, collection, filter)
        self._subscriptions.append(subscription)
        logger.debug("Subscribed to %s with filter %s", collection, filter)
        return subscription
