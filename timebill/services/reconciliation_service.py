"""Reconciliation service - merges optimistic local state with store notifications."""
import asyncio
import logging
from datetime import datetime, timezone, tzinfo
from typing import Awaitable, Callable, NamedTuple, Optional

from pydantic import ValidationError as ModelValidationError

from timebill.errors import EngineError
from timebill.models.events import ChangeEvent, ChangeType
from timebill.models.payment import PaymentRecord
from timebill.models.time_entry import TimeEntry
from timebill.services.records import doc_to_entry, doc_to_payment
from timebill.store.base import PAYMENTS, TIME_ENTRIES, DataStore, Filter, Record, Subscription
from timebill.utils.statistics import as_aware, period_bounds

logger = logging.getLogger(__name__)


class MirrorChange(NamedTuple):
    """What a merge did to one mirrored record."""

    collection: str
    type: ChangeType
    record_id: str
    status_changed: bool
    fields: frozenset = frozenset()


def _stamp(timestamp: datetime, value) -> tuple[datetime, str]:
    # Equal timestamps are ordered by value so every replica picks the same winner
    return timestamp, repr(value)


class RecordMirror:
    """
    Reconciled copy of one collection's records.

    Every field carries the timestamp of the write that set it; a write only
    wins over a field set at a later timestamp (last writer wins per field).
    Applying the same write twice, or two writes in either order, gives the
    same result. Deleted ids are tombstoned and ignore any later write.
    """

    def __init__(self, collection: str, predicate: Callable[[Record], bool]):
        self.collection = collection
        self._predicate = predicate
        self._records: dict[str, Record] = {}
        self._versions: dict[str, dict[str, tuple[datetime, str]]] = {}
        self._tombstones: dict[str, datetime] = {}
        self._pending: dict[str, list[tuple[Record, datetime]]] = {}

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def records(self) -> list[Record]:
        return [dict(record) for record in self._records.values()]

    def get(self, record_id: str) -> Optional[Record]:
        record = self._records.get(record_id)
        return dict(record) if record is not None else None

    def is_deleted(self, record_id: str) -> bool:
        return record_id in self._tombstones

    def has_pending(self, record_id: str) -> bool:
        return record_id in self._pending

    def _apply_fields(self, record_id: str, record: Record, fields: Record, timestamp: datetime) -> None:
        versions = self._versions.setdefault(record_id, {})
        for field, value in fields.items():
            if field == "id":
                continue
            stamp = _stamp(timestamp, value)
            known = versions.get(field)
            if known is None or stamp > known:
                record[field] = value
                versions[field] = stamp

    def park(self, record_id: str, fields: Record, timestamp: datetime) -> None:
        """Keep a patch for a record not seen yet."""
        self._pending.setdefault(record_id, []).append((dict(fields), timestamp))

    def merge(
        self,
        record_id: str,
        fields: Record,
        timestamp: datetime,
        complete: bool,
    ) -> Optional[tuple[Optional[Record], Optional[Record]]]:
        """
        Merge a full (``complete``) or partial record.

        A partial record for an unknown id is parked until the full record
        arrives. Returns the record before and after the merge (either may be
        None), or None when nothing was applied.
        """
        if record_id in self._tombstones:
            return None

        timestamp = as_aware(timestamp)
        before = self._records.get(record_id)
        if before is None and not complete:
            self.park(record_id, fields, timestamp)
            return None

        record = dict(before) if before is not None else {"id": record_id}
        self._apply_fields(record_id, record, fields, timestamp)
        if before is None:
            for patch, patch_timestamp in self._pending.pop(record_id, []):
                self._apply_fields(record_id, record, patch, patch_timestamp)

        if not self._predicate(record):
            self._records.pop(record_id, None)
            return (before, None) if before is not None else None

        self._records[record_id] = record
        return before, record

    def remove(self, record_id: str, timestamp: datetime) -> Optional[Record]:
        """Tombstone ``record_id``; returns the removed record if it was present."""
        self._tombstones[record_id] = as_aware(timestamp)
        self._pending.pop(record_id, None)
        self._versions.pop(record_id, None)
        return self._records.pop(record_id, None)

    def replace_all(self, records: list[Record], loaded_at: datetime) -> list[tuple[Optional[Record], Optional[Record]]]:
        """
        Merge a baseline query result.

        Records missing from the baseline are dropped unless they were written
        after ``loaded_at``, since those arrived while the query was running.
        """
        loaded_at = as_aware(loaded_at)
        results = []
        seen = set()
        for record in records:
            record_id = record["id"]
            seen.add(record_id)
            timestamp = record.get("updated_at") or loaded_at
            result = self.merge(record_id, record, timestamp, complete=True)
            if result is not None:
                results.append(result)

        for record_id in list(self._records):
            if record_id in seen:
                continue
            stamps = self._versions.get(record_id) or {}
            newest = max((stamp[0] for stamp in stamps.values()), default=None)
            if newest is None or newest <= loaded_at:
                results.append((self._records.pop(record_id), None))
        return results


class SubscriptionHandle:
    """
    Owned handle over the consumer tasks of one or more subscriptions.

    The owner must call ``close()`` on scope change or teardown.
    """

    def __init__(self, feeds: list[tuple[Subscription, Callable[[ChangeEvent], Awaitable[None]]]]):
        self._subscriptions = [subscription for subscription, _ in feeds]
        self._tasks = [asyncio.create_task(self._consume(sub, handler)) for sub, handler in feeds]
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _consume(self, subscription: Subscription, handler) -> None:
        try:
            async for event in subscription:
                try:
                    await handler(event)
                except Exception:
                    logger.exception("Failed to apply %s notification for %s", event.type.value, event.record_id)
        except EngineError as e:
            logger.error("Change notifications stopped: %s", e.message)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            await subscription.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)


class ReconciliationService:
    """
    Local mirrors of one actor's time entries and payments.

    Mirrors are fed by three sources: the baseline ``load()``, optimistic
    writes from the session machine, and store change notifications. All
    three go through the same per-field last-writer-wins merge.
    """

    def __init__(
        self,
        store: DataStore,
        actor_id: str,
        scope_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: tzinfo = timezone.utc,
    ):
        """Initialize service with a Data Store and the actor/scope to mirror."""
        self.store = store
        self.actor_id = actor_id
        self.scope_id = scope_id
        self.tz = tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._mirrors = {
            TIME_ENTRIES: RecordMirror(TIME_ENTRIES, self._owns),
            PAYMENTS: RecordMirror(PAYMENTS, self._owns),
        }
        self._listeners: list[Callable[[MirrorChange], None]] = []

    def _owns(self, record: Record) -> bool:
        if record.get("actor_id") != self.actor_id:
            return False
        return self.scope_id is None or record.get("scope_id") == self.scope_id

    def _filter(self) -> Filter:
        query = {"actor_id": self.actor_id}
        if self.scope_id is not None:
            query["scope_id"] = self.scope_id
        return query

    def mirror(self, collection: str) -> RecordMirror:
        return self._mirrors[collection]

    # Listeners

    def add_listener(self, listener: Callable[[MirrorChange], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[MirrorChange], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, collection: str, before: Optional[Record], after: Optional[Record]) -> None:
        if before == after:
            return

        if before is None:
            change_type = ChangeType.CREATED
        elif after is None:
            change_type = ChangeType.DELETED
        else:
            change_type = ChangeType.UPDATED

        record_id = (after or before)["id"]
        old, new = before or {}, after or {}
        status_changed = old.get("status") != new.get("status")
        fields = frozenset(key for key in old.keys() | new.keys() if old.get(key) != new.get(key))
        change = MirrorChange(collection, change_type, record_id, status_changed, fields)
        for listener in list(self._listeners):
            listener(change)

    def _merge(self, collection: str, record_id: str, fields: Record, timestamp: datetime, complete: bool) -> None:
        result = self._mirrors[collection].merge(record_id, fields, timestamp, complete)
        if result is not None:
            self._notify(collection, *result)

    # Views

    def _entries(self, since: Optional[datetime] = None) -> list[TimeEntry]:
        entries = []
        for record in self._mirrors[TIME_ENTRIES].records():
            try:
                entry = doc_to_entry(record)
            except ModelValidationError:
                logger.warning("Skipping incomplete time entry %s", record.get("id"))
                continue
            if since is None or entry.start_time >= since:
                entries.append(entry)
        return sorted(entries, key=lambda e: e.start_time, reverse=True)

    @property
    def entries(self) -> list[TimeEntry]:
        """All mirrored entries, most recent first."""
        return self._entries()

    @property
    def today_entries(self) -> list[TimeEntry]:
        """Entries started today in the configured timezone."""
        day_start, _ = period_bounds(self._clock().astimezone(self.tz).date(), self.tz)
        return self._entries(since=day_start)

    @property
    def week_entries(self) -> list[TimeEntry]:
        """Entries started since Monday in the configured timezone."""
        _, week_start = period_bounds(self._clock().astimezone(self.tz).date(), self.tz)
        return self._entries(since=week_start)

    @property
    def payments(self) -> list[PaymentRecord]:
        """All mirrored payments, most recently created first."""
        payments = []
        for record in self._mirrors[PAYMENTS].records():
            try:
                payments.append(doc_to_payment(record))
            except ModelValidationError:
                logger.warning("Skipping incomplete payment %s", record.get("id"))
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(payments, key=lambda p: p.created_at or epoch, reverse=True)

    # Optimistic writes

    def upsert_local(self, collection: str, record: Record) -> None:
        """Merge a record just written by this process."""
        timestamp = record.get("updated_at") or self._clock()
        self._merge(collection, record["id"], record, timestamp, complete=True)

    def remove_local(self, collection: str, record_id: str) -> None:
        """Drop a record just deleted by this process."""
        removed = self._mirrors[collection].remove(record_id, self._clock())
        if removed is not None:
            self._notify(collection, removed, None)

    # Baseline

    async def load(self) -> None:
        """
        Query the store for the actor's records and merge them in.

        Raises:
            StoreError: If the store query fails
        """
        loaded_at = self._clock()
        for collection in (TIME_ENTRIES, PAYMENTS):
            page = await self.store.query(collection, self._filter())
            for before, after in self._mirrors[collection].replace_all(page.items, loaded_at):
                self._notify(collection, before, after)
            logger.debug("Loaded %d %s for actor %s", len(page.items), collection, self.actor_id)

    # Change notifications

    def _converts(self, collection: str, record: Record) -> bool:
        converter = doc_to_entry if collection == TIME_ENTRIES else doc_to_payment
        try:
            converter(record)
        except (ModelValidationError, TypeError, ValueError):
            return False
        return True

    def _is_well_formed(self, event: ChangeEvent, collection: str) -> bool:
        if event.collection != collection or not event.record_id:
            return False
        if event.type is ChangeType.CREATED:
            return self._converts(collection, {**event.record, "id": event.record_id})
        elif event.type is ChangeType.UPDATED and not event.record:
            return False
        return True

    async def _on_changed(self, collection: str, event: ChangeEvent) -> None:
        if not self._is_well_formed(event, collection):
            logger.warning("Dropping malformed %s notification for %s", collection, event.record_id)
            return

        mirror = self._mirrors[collection]
        record_id = event.record_id

        if event.type is ChangeType.DELETED:
            removed = mirror.remove(record_id, event.timestamp)
            if removed is not None:
                self._notify(collection, removed, None)
            return

        if event.type is ChangeType.UPDATED and record_id not in mirror and not mirror.is_deleted(record_id):
            fetched = None
            try:
                fetched = await self.store.get(collection, record_id)
            except EngineError as e:
                logger.warning("Could not fetch %s %s: %s", collection, record_id, e.message)

            if fetched is None:
                logger.warning("Update for unknown %s %s kept until the record arrives", collection, record_id)
                mirror.park(record_id, event.record, as_aware(event.timestamp))
                return

            self._merge(collection, record_id, fetched, fetched.get("updated_at") or event.timestamp, complete=True)

        current = mirror.get(record_id)
        if current is not None and not self._converts(collection, {**current, **event.record, "id": record_id}):
            logger.warning("Dropping malformed %s update for %s", collection, record_id)
            return

        self._merge(
            collection,
            record_id,
            event.record,
            event.timestamp,
            complete=event.type is ChangeType.CREATED,
        )

    async def on_entry_changed(self, event: ChangeEvent) -> None:
        """Apply a time entry change notification."""
        await self._on_changed(TIME_ENTRIES, event)

    async def on_payment_changed(self, event: ChangeEvent) -> None:
        """Apply a payment change notification."""
        await self._on_changed(PAYMENTS, event)

    async def subscribe(self) -> SubscriptionHandle:
        """
        Start consuming store notifications for this actor and scope.

        Returns:
            Handle whose ``close()`` stops both feeds

        Raises:
            StoreError: If a subscription cannot be opened
        """
        entries = await self.store.subscribe(TIME_ENTRIES, self._filter())
        try:
            payments = await self.store.subscribe(PAYMENTS, self._filter())
        except EngineError:
            await entries.close()
            raise

        return SubscriptionHandle([
            (entries, self.on_entry_changed),
            (payments, self.on_payment_changed),
        ])
