"""Tests for the in-memory Data Store."""
import asyncio
from datetime import datetime, timezone

import pytest

from timebill.errors import NotFoundError
from timebill.models.events import ChangeType
from timebill.store.base import ASCENDING, DESCENDING, PAYMENTS, TIME_ENTRIES
from timebill.store.memory import InMemoryDataStore, matches

T0 = datetime(2025, 3, 12, 9, 0, tzinfo=timezone.utc)


class TestMatches:
    """Tests for the filter matcher."""

    def test_equality_and_list_membership(self):
        """Test scalars match list fields by membership."""
        record = {"status": "paid", "time_entry_ids": ["e1", "e2"]}

        assert matches(record, {"status": "paid"})
        assert matches(record, {"time_entry_ids": "e2"})
        assert not matches(record, {"time_entry_ids": "e3"})

    def test_in_and_ne(self):
        """Test the overlap query used to find billed entries."""
        record = {"status": "pending", "time_entry_ids": ["e1", "e2"]}

        assert matches(record, {"time_entry_ids": {"$in": ["e2", "e9"]}, "status": {"$ne": "cancelled"}})
        assert not matches({**record, "status": "cancelled"}, {"status": {"$ne": "cancelled"}})
        assert matches(record, {"status": {"$nin": ["paid", "refunded"]}})

    def test_ranges_skip_missing_values(self):
        """Test comparisons never match a missing field."""
        assert matches({"amount_cents": 500}, {"amount_cents": {"$gte": 100, "$lte": 500}})
        assert not matches({"amount_cents": 501}, {"amount_cents": {"$lte": 500}})
        assert not matches({"payment_date": None}, {"payment_date": {"$gte": T0}})

    def test_regex_options(self):
        """Test case-insensitive regex search."""
        assert matches({"notes": "Sprint 1"}, {"notes": {"$regex": "sprint", "$options": "i"}})
        assert not matches({"notes": "Sprint 1"}, {"notes": {"$regex": "sprint"}})
        assert not matches({"notes": None}, {"notes": {"$regex": "sprint"}})

    def test_or(self):
        """Test a disjunction of sub-filters."""
        query = {"$or": [{"status": "active"}, {"status": "paused"}]}

        assert matches({"status": "paused"}, query)
        assert not matches({"status": "completed"}, query)

    def test_unknown_operator(self):
        """Test unsupported operators are reported."""
        with pytest.raises(ValueError):
            matches({"x": 1}, {"x": {"$exists": True}})


@pytest.mark.asyncio
class TestCrud:
    """Tests for create/get/update/delete."""

    async def test_create_assigns_id(self):
        """Test created records get an id and are copied."""
        store = InMemoryDataStore()
        source = {"status": "active", "tags": ["a"]}

        record = await store.create(TIME_ENTRIES, source)
        source["tags"].append("b")

        assert len(record["id"]) == 24
        assert (await store.get(TIME_ENTRIES, record["id"]))["tags"] == ["a"]

    async def test_update_returns_full_record(self):
        """Test update merges the patch into the stored record."""
        store = InMemoryDataStore()
        record = await store.create(TIME_ENTRIES, {"status": "active", "duration_minutes": 0})

        updated = await store.update(TIME_ENTRIES, record["id"], {"duration_minutes": 30})

        assert updated == {"id": record["id"], "status": "active", "duration_minutes": 30}

    async def test_missing_records(self):
        """Test update and delete of unknown ids fail; get returns None."""
        store = InMemoryDataStore()

        assert await store.get(TIME_ENTRIES, "missing") is None
        with pytest.raises(NotFoundError):
            await store.update(TIME_ENTRIES, "missing", {"status": "completed"})
        with pytest.raises(NotFoundError):
            await store.delete(TIME_ENTRIES, "missing")

    async def test_collections_are_separate(self):
        """Test ids do not leak across collections."""
        store = InMemoryDataStore()
        record = await store.create(TIME_ENTRIES, {"status": "active"})

        assert await store.get(PAYMENTS, record["id"]) is None


@pytest.mark.asyncio
class TestQuery:
    """Tests for filtered, sorted and paged queries."""

    async def _seed(self, store):
        for amount, date in [(300, T0), (100, None), (200, T0.replace(day=13))]:
            await store.create(PAYMENTS, {"amount_cents": amount, "payment_date": date})

    async def test_sort_with_missing_values_last(self):
        """Test sorting puts records without the field at the end."""
        store = InMemoryDataStore()
        await self._seed(store)

        page = await store.query(PAYMENTS, sort=[("payment_date", DESCENDING)])

        assert [r["amount_cents"] for r in page.items] == [200, 300, 100]

    async def test_sort_ascending(self):
        """Test ascending sort on a numeric field."""
        store = InMemoryDataStore()
        await self._seed(store)

        page = await store.query(PAYMENTS, sort=[("amount_cents", ASCENDING)])

        assert [r["amount_cents"] for r in page.items] == [100, 200, 300]

    async def test_pagination(self):
        """Test page slicing and counters."""
        store = InMemoryDataStore()
        await self._seed(store)

        page = await store.query(PAYMENTS, sort=[("amount_cents", ASCENDING)], page=2, per_page=2)

        assert [r["amount_cents"] for r in page.items] == [300]
        assert page.pagination.total_count == 3
        assert page.pagination.total_pages == 2
        assert page.pagination.has_previous
        assert not page.pagination.has_next

    async def test_unpaged_returns_everything(self):
        """Test omitting per_page returns all matches."""
        store = InMemoryDataStore()
        await self._seed(store)

        page = await store.query(PAYMENTS, {"amount_cents": {"$gte": 200}})

        assert len(page.items) == 2
        assert page.pagination.total_pages == 1

    async def test_empty_query(self):
        """Test a query without matches still has counters."""
        store = InMemoryDataStore()

        page = await store.query(PAYMENTS)

        assert page.items == []
        assert page.pagination.total_count == 0
        assert page.pagination.total_pages == 0


@pytest.mark.asyncio
class TestSubscriptions:
    """Tests for change notifications."""

    async def _drain(self, subscription, count):
        return [await asyncio.wait_for(subscription.__anext__(), 1) for _ in range(count)]

    async def test_events_for_each_write(self):
        """Test created, updated and deleted notifications in order."""
        store = InMemoryDataStore(clock=lambda: T0)
        subscription = await store.subscribe(TIME_ENTRIES)

        record = await store.create(TIME_ENTRIES, {"status": "active", "updated_at": T0})
        await store.update(TIME_ENTRIES, record["id"], {"status": "completed"})
        await store.delete(TIME_ENTRIES, record["id"])

        created, updated, deleted = await self._drain(subscription, 3)
        assert created.type == ChangeType.CREATED
        assert created.record["status"] == "active"
        assert updated.type == ChangeType.UPDATED
        assert updated.record == {"status": "completed"}
        assert deleted.type == ChangeType.DELETED
        assert deleted.record_id == record["id"]
        await subscription.close()

    async def test_filter_uses_full_record(self):
        """Test a patch is delivered when the stored record matches the filter."""
        store = InMemoryDataStore()
        subscription = await store.subscribe(TIME_ENTRIES, {"actor_id": "actor123"})

        await store.create(TIME_ENTRIES, {"actor_id": "actor456"})
        mine = await store.create(TIME_ENTRIES, {"actor_id": "actor123"})
        await store.update(TIME_ENTRIES, mine["id"], {"description": "Renamed"})

        created, updated = await self._drain(subscription, 2)
        assert created.record_id == mine["id"]
        assert updated.record == {"description": "Renamed"}
        await subscription.close()

    async def test_event_timestamp_from_updated_at(self):
        """Test notifications are stamped with the write's updated_at."""
        later = T0.replace(hour=10)
        store = InMemoryDataStore(clock=lambda: T0)
        subscription = await store.subscribe(TIME_ENTRIES)

        record = await store.create(TIME_ENTRIES, {"status": "active"})
        await store.update(TIME_ENTRIES, record["id"], {"status": "completed", "updated_at": later})

        created, updated = await self._drain(subscription, 2)
        assert created.timestamp == T0
        assert updated.timestamp == later
        await subscription.close()

    async def test_close_ends_iteration(self):
        """Test a closed subscription stops iterating and is released."""
        store = InMemoryDataStore()
        subscription = await store.subscribe(PAYMENTS)

        await subscription.close()
        await subscription.close()

        assert store.subscription_count == 0
        assert [event async for event in subscription] == []
