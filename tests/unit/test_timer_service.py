"""Tests for TimerService."""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from timebill.errors import AuthError, ConflictError, NotFoundError, StoreError, ValidationError
from timebill.models.time_entry import EntryStatus, TaskCategory
from timebill.services.timer_service import AutoPersistTimer, TimerService, elapsed_minutes
from timebill.store.base import PAYMENTS, TIME_ENTRIES

ACTOR_ID = "actor123"
SCOPE_ID = "scope-website"


def test_elapsed_minutes_floors_and_clamps():
    """Test partial minutes are dropped and negative spans count as zero."""
    start = datetime(2025, 3, 12, 9, 0, tzinfo=timezone.utc)

    assert elapsed_minutes(start, datetime(2025, 3, 12, 9, 2, 59, tzinfo=timezone.utc)) == 2
    assert elapsed_minutes(start, datetime(2025, 3, 12, 8, 0, tzinfo=timezone.utc)) == 0


def test_requires_actor(store, reconciler):
    """Test the service cannot be built without a current actor."""
    with pytest.raises(AuthError):
        TimerService(store, reconciler, "", rate_per_minute=75.0)


@pytest.mark.asyncio
class TestTimerServiceStart:
    """Tests for starting sessions."""

    async def test_start_success(self, timer_service, store, clock):
        """Test starting a session persists an active entry."""
        entry = await timer_service.start(SCOPE_ID, "Landing page layout")

        assert entry.id is not None
        assert entry.status == EntryStatus.ACTIVE
        assert entry.start_time == clock.now
        assert entry.end_time is None
        assert entry.rate_per_minute == 75.0
        assert timer_service.current.id == entry.id
        assert timer_service.timer is not None

        stored = await store.get(TIME_ENTRIES, entry.id)
        assert stored["status"] == "active"
        assert stored["actor_id"] == ACTOR_ID

    async def test_start_pushes_entry_into_mirror(self, timer_service, reconciler):
        """Test the new entry is visible locally before any notification arrives."""
        entry = await timer_service.start(SCOPE_ID, "Landing page layout")

        assert [e.id for e in reconciler.entries] == [entry.id]

    async def test_start_infers_category(self, timer_service):
        """Test the category is inferred from the description when omitted."""
        entry = await timer_service.start(SCOPE_ID, "Fix login bug")

        assert entry.category == TaskCategory.TESTING

    async def test_start_keeps_explicit_category(self, timer_service):
        """Test an explicit category wins over inference."""
        entry = await timer_service.start(SCOPE_ID, "Fix login bug", category=TaskCategory.SUPPORT)

        assert entry.category == TaskCategory.SUPPORT

    async def test_start_with_open_session(self, timer_service):
        """Test starting while a session is open fails."""
        await timer_service.start(SCOPE_ID, "First")

        with pytest.raises(ValidationError) as exc:
            await timer_service.start(SCOPE_ID, "Second")

        assert exc.value.code == "SESSION_ALREADY_OPEN"

    async def test_start_with_open_session_in_store(self, timer_service, store, clock):
        """Test starting fails when the store already holds an open session for the scope."""
        await store.create(TIME_ENTRIES, {
            "actor_id": ACTOR_ID,
            "scope_id": SCOPE_ID,
            "start_time": clock.now,
            "status": "paused",
        })

        with pytest.raises(ValidationError):
            await timer_service.start(SCOPE_ID, "Second")

        assert timer_service.current is None

    async def test_start_store_failure_leaves_idle(self, timer_service, store):
        """Test a failed insert leaves no session and no timer."""
        store.create = AsyncMock(side_effect=StoreError("store unavailable"))

        with pytest.raises(StoreError):
            await timer_service.start(SCOPE_ID, "Work")

        assert timer_service.current is None
        assert timer_service.timer is None


@pytest.mark.asyncio
class TestTimerServiceStop:
    """Tests for stopping sessions."""

    async def test_stop_after_125_minutes(self, timer_service, clock):
        """Test duration and amount after 125 minutes at 75 per minute."""
        await timer_service.start(SCOPE_ID, "Work")
        clock.advance(minutes=125)

        entry = await timer_service.stop()

        assert entry.status == EntryStatus.COMPLETED
        assert entry.duration_minutes == 125
        assert entry.amount == 125 * 75
        assert entry.end_time == clock.now
        assert timer_service.current is None
        assert timer_service.timer is None

    async def test_stop_floors_partial_minutes(self, timer_service, clock):
        """Test partial minutes are not billed."""
        await timer_service.start(SCOPE_ID, "Work")
        clock.advance(minutes=10, seconds=59)

        entry = await timer_service.stop()

        assert entry.duration_minutes == 10

    async def test_stop_counts_paused_time(self, timer_service, clock):
        """Test paused wall-clock time stays in the duration."""
        await timer_service.start(SCOPE_ID, "Work")
        clock.advance(minutes=20)
        await timer_service.pause()
        clock.advance(minutes=40)

        entry = await timer_service.stop()

        assert entry.duration_minutes == 60

    async def test_stop_without_session(self, timer_service):
        """Test stopping with no open session fails."""
        with pytest.raises(ValidationError) as exc:
            await timer_service.stop()

        assert exc.value.code == "NO_SESSION"

    async def test_stop_store_failure_keeps_session(self, timer_service, store, clock):
        """Test a failed final write leaves the session active with a live timer."""
        entry = await timer_service.start(SCOPE_ID, "Work")
        clock.advance(minutes=30)
        store.update = AsyncMock(side_effect=StoreError("store unavailable"))

        with pytest.raises(StoreError):
            await timer_service.stop()

        assert timer_service.current.id == entry.id
        assert timer_service.current.status == EntryStatus.ACTIVE
        assert timer_service.timer is not None
        assert not timer_service.timer.cancelled

    async def test_switch_stops_then_starts(self, timer_service, clock):
        """Test switching completes the open session before starting the next."""
        first = await timer_service.start(SCOPE_ID, "Work")
        clock.advance(minutes=30)

        stopped, started = await timer_service.switch("scope-api", "Endpoints")

        assert stopped.id == first.id
        assert stopped.duration_minutes == 30
        assert started.scope_id == "scope-api"
        assert timer_service.current.id == started.id

    async def test_switch_when_idle(self, timer_service):
        """Test switching with no open session just starts."""
        stopped, started = await timer_service.switch(SCOPE_ID, "Work")

        assert stopped is None
        assert started.status == EntryStatus.ACTIVE


@pytest.mark.asyncio
class TestTimerServicePauseResume:
    """Tests for pausing, resuming and cancelling."""

    async def test_pause_and_resume(self, timer_service, clock):
        """Test the active/paused round trip and timer handling."""
        await timer_service.start(SCOPE_ID, "Work")
        clock.advance(minutes=15)

        paused = await timer_service.pause()
        assert paused.status == EntryStatus.PAUSED
        assert paused.duration_minutes == 15
        assert timer_service.timer is None

        resumed = await timer_service.resume()
        assert resumed.status == EntryStatus.ACTIVE
        assert timer_service.timer is not None

    async def test_pause_when_paused(self, timer_service):
        """Test pausing twice fails."""
        await timer_service.start(SCOPE_ID, "Work")
        await timer_service.pause()

        with pytest.raises(ValidationError) as exc:
            await timer_service.pause()

        assert exc.value.code == "INVALID_SESSION_STATE"

    async def test_resume_when_active(self, timer_service):
        """Test resuming an active session fails."""
        await timer_service.start(SCOPE_ID, "Work")

        with pytest.raises(ValidationError):
            await timer_service.resume()

    async def test_pause_store_failure_restarts_timer(self, timer_service, store):
        """Test a failed pause leaves the session active and ticking."""
        await timer_service.start(SCOPE_ID, "Work")
        store.update = AsyncMock(side_effect=StoreError("store unavailable"))

        with pytest.raises(StoreError):
            await timer_service.pause()

        assert timer_service.current.status == EntryStatus.ACTIVE
        assert timer_service.timer is not None

    async def test_resume_store_failure_stays_paused(self, timer_service, store):
        """Test a failed resume leaves the session paused without a timer."""
        await timer_service.start(SCOPE_ID, "Work")
        await timer_service.pause()
        store.update = AsyncMock(side_effect=StoreError("store unavailable"))

        with pytest.raises(StoreError):
            await timer_service.resume()

        assert timer_service.current.status == EntryStatus.PAUSED
        assert timer_service.timer is None

    async def test_cancel(self, timer_service, store):
        """Test cancelling closes the session without completing it."""
        entry = await timer_service.start(SCOPE_ID, "Work")

        cancelled = await timer_service.cancel()

        assert cancelled.status == EntryStatus.CANCELLED
        assert timer_service.current is None
        stored = await store.get(TIME_ENTRIES, entry.id)
        assert stored["status"] == "cancelled"


@pytest.mark.asyncio
class TestAutoPersist:
    """Tests for the periodic progress write."""

    async def test_tick_writes_progress(self, store, reconciler, clock):
        """Test a tick persists duration and amount without changing status."""
        service = TimerService(store, reconciler, ACTOR_ID, 75.0, auto_persist_interval=0.01, clock=clock)
        try:
            entry = await service.start(SCOPE_ID, "Work")
            clock.advance(minutes=10)
            await asyncio.sleep(0.05)

            stored = await store.get(TIME_ENTRIES, entry.id)
            assert stored["duration_minutes"] == 10
            assert stored["amount"] == 750
            assert stored["status"] == "active"
            assert service.current.duration_minutes == 10
        finally:
            await service.close()

    async def test_no_tick_after_stop(self, store, reconciler, clock):
        """Test stop's final write is the last write of the session."""
        service = TimerService(store, reconciler, ACTOR_ID, 75.0, auto_persist_interval=0.01, clock=clock)
        try:
            entry = await service.start(SCOPE_ID, "Work")
            clock.advance(minutes=5)
            await asyncio.sleep(0.03)
            await service.stop()

            clock.advance(minutes=30)
            await asyncio.sleep(0.05)

            stored = await store.get(TIME_ENTRIES, entry.id)
            assert stored["status"] == "completed"
            assert stored["duration_minutes"] == 5
        finally:
            await service.close()

    async def test_tick_failure_is_swallowed(self, store, reconciler, clock):
        """Test a failing tick does not end the session."""
        service = TimerService(store, reconciler, ACTOR_ID, 75.0, auto_persist_interval=0.01, clock=clock)
        try:
            await service.start(SCOPE_ID, "Work")
            store.update = AsyncMock(side_effect=StoreError("store unavailable"))
            await asyncio.sleep(0.05)

            assert store.update.await_count >= 1
            assert service.current.status == EntryStatus.ACTIVE
            assert not service.timer.cancelled
        finally:
            await service.close()

    async def test_timer_keeps_ticking_after_error(self):
        """Test callback errors are logged and ticking continues."""
        calls = []

        async def tick():
            calls.append(1)
            raise RuntimeError("boom")

        timer = AutoPersistTimer(0.01, tick)
        await asyncio.sleep(0.06)
        await timer.cancel()

        assert len(calls) >= 2

    async def test_cancel_waits_for_in_flight_tick(self):
        """Test cancel returns only once the running tick has finished."""
        started = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def tick():
            started.set()
            await release.wait()
            finished.append(True)

        timer = AutoPersistTimer(0.001, tick)
        await started.wait()

        cancelling = asyncio.create_task(timer.cancel())
        await asyncio.sleep(0.01)
        assert not cancelling.done()

        release.set()
        await cancelling

        assert finished == [True]
        assert timer.cancelled


@pytest.mark.asyncio
class TestTimerServiceRecords:
    """Tests for editing and deleting entries."""

    async def test_update_description_of_current(self, timer_service):
        """Test the open session's description can change."""
        entry = await timer_service.start(SCOPE_ID, "Work")

        updated = await timer_service.update_description(entry.id, "Hero section")

        assert updated.description == "Hero section"
        assert timer_service.current.description == "Hero section"

    async def test_update_description_of_completed(self, timer_service, reconciler):
        """Test a completed entry's description can change."""
        entry = await timer_service.start(SCOPE_ID, "Work")
        await timer_service.stop()

        updated = await timer_service.update_description(entry.id, "Hero section")

        assert updated.description == "Hero section"
        assert reconciler.entries[0].description == "Hero section"

    async def test_update_description_of_foreign_entry(self, timer_service, store, clock):
        """Test another actor's entry is reported as missing."""
        record = await store.create(TIME_ENTRIES, {
            "actor_id": "actor456",
            "scope_id": SCOPE_ID,
            "start_time": clock.now,
            "end_time": clock.now,
            "status": "completed",
        })

        with pytest.raises(NotFoundError):
            await timer_service.update_description(record["id"], "Mine now")

    async def test_delete_requires_confirmation(self, timer_service, store):
        """Test deleting without confirmation fails and keeps the entry."""
        entry = await timer_service.start(SCOPE_ID, "Work")
        await timer_service.stop()

        with pytest.raises(ValidationError) as exc:
            await timer_service.delete_record(entry.id, confirmed=False)

        assert exc.value.code == "CONFIRMATION_REQUIRED"
        assert await store.get(TIME_ENTRIES, entry.id) is not None

    async def test_delete_current_session(self, timer_service, store, reconciler):
        """Test deleting the open session clears the slot and the mirror."""
        entry = await timer_service.start(SCOPE_ID, "Work")

        assert await timer_service.delete_record(entry.id, confirmed=True) is True

        assert timer_service.current is None
        assert timer_service.timer is None
        assert await store.get(TIME_ENTRIES, entry.id) is None
        assert reconciler.entries == []

    async def test_delete_billed_entry(self, timer_service, store, clock):
        """Test an entry in a live payment cannot be deleted."""
        entry = await timer_service.start(SCOPE_ID, "Work")
        await timer_service.stop()
        await store.create(PAYMENTS, {
            "actor_id": ACTOR_ID,
            "time_entry_ids": [entry.id],
            "status": "pending",
        })

        with pytest.raises(ConflictError):
            await timer_service.delete_record(entry.id, confirmed=True)

    async def test_list_entries(self, timer_service, clock):
        """Test entries are listed most recent first with status filtering."""
        first = await timer_service.start(SCOPE_ID, "First")
        clock.advance(minutes=10)
        await timer_service.stop()
        clock.advance(minutes=5)
        second = await timer_service.start(SCOPE_ID, "Second")

        page = await timer_service.list_entries()
        assert [e.id for e in page.items] == [second.id, first.id]
        assert page.pagination.total_count == 2

        completed = await timer_service.list_entries(statuses=[EntryStatus.COMPLETED])
        assert [e.id for e in completed.items] == [first.id]


@pytest.mark.asyncio
class TestTimerServiceTotals:
    """Tests for daily and weekly totals."""

    async def test_totals_include_active_session(self, timer_service, clock):
        """Test totals add the live duration of the active session."""
        await timer_service.start(SCOPE_ID, "Morning")
        clock.advance(minutes=60)
        await timer_service.stop()

        await timer_service.start(SCOPE_ID, "Afternoon")
        clock.advance(minutes=15)

        assert timer_service.total_today() == 75
        assert timer_service.total_this_week() == 75

    async def test_totals_ignore_paused_session(self, timer_service, clock):
        """Test a paused session adds nothing live."""
        await timer_service.start(SCOPE_ID, "Work")
        clock.advance(minutes=20)
        await timer_service.pause()

        assert timer_service.total_today() == 0

    async def test_week_includes_earlier_days(self, timer_service, clock):
        """Test Monday's work counts for the week but not for Wednesday."""
        wednesday = clock.now
        clock.now = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
        await timer_service.start(SCOPE_ID, "Monday")
        clock.advance(minutes=30)
        await timer_service.stop()

        clock.now = wednesday
        await timer_service.start(SCOPE_ID, "Wednesday")
        clock.advance(minutes=45)
        await timer_service.stop()

        assert timer_service.total_today() == 45
        assert timer_service.total_this_week() == 75


@pytest.mark.asyncio
class TestTimerServiceRestore:
    """Tests for adopting sessions left open in the store."""

    async def test_restore_active_session(self, store, reconciler, clock):
        """Test an active session resumes ticking."""
        record = await store.create(TIME_ENTRIES, {
            "actor_id": ACTOR_ID,
            "scope_id": SCOPE_ID,
            "start_time": clock.now,
            "rate_per_minute": 75.0,
            "status": "active",
            "updated_at": clock.now,
        })
        service = TimerService(store, reconciler, ACTOR_ID, 75.0, clock=clock)
        try:
            entry = await service.restore()

            assert entry.id == record["id"]
            assert service.timer is not None
        finally:
            await service.close()

    async def test_restore_paused_session(self, store, reconciler, clock):
        """Test a paused session is adopted without a timer."""
        await store.create(TIME_ENTRIES, {
            "actor_id": ACTOR_ID,
            "scope_id": SCOPE_ID,
            "start_time": clock.now,
            "status": "paused",
            "updated_at": clock.now,
        })
        service = TimerService(store, reconciler, ACTOR_ID, 75.0, clock=clock)

        entry = await service.restore()

        assert entry.status == EntryStatus.PAUSED
        assert service.timer is None

    async def test_restore_nothing_open(self, timer_service):
        """Test restore returns None when no session is open."""
        assert await timer_service.restore() is None

    async def test_close_leaves_stored_session(self, timer_service, store):
        """Test teardown releases the timer but keeps the session open in the store."""
        entry = await timer_service.start(SCOPE_ID, "Work")

        await timer_service.close()

        assert timer_service.timer is None
        stored = await store.get(TIME_ENTRIES, entry.id)
        assert stored["status"] == "active"
