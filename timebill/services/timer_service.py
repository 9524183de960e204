"""Timer service - the time session state machine."""
import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from timebill.errors import AuthError, ConflictError, EngineError, NotFoundError, ValidationError
from timebill.models.pagination import Page
from timebill.models.payment import PaymentStatus
from timebill.models.time_entry import OPEN_STATUSES, EntryStatus, TaskCategory, TimeEntry
from timebill.services.reconciliation_service import ReconciliationService
from timebill.services.records import doc_to_entry, entry_to_doc, write_time
from timebill.store.base import DESCENDING, PAYMENTS, TIME_ENTRIES, DataStore
from timebill.utils.calculator import entry_amount, infer_task_category

logger = logging.getLogger(__name__)


class AutoPersistTimer:
    """
    Owned handle for the periodic progress write of an open session.

    Ticks run under a lock; ``cancel()`` takes the same lock, so once it
    returns no tick is running and none will run again.
    """

    def __init__(self, interval: float, callback: Callable[[], Awaitable[None]]):
        self.interval = interval
        self._callback = callback
        self._lock = asyncio.Lock()
        self._cancelled = False
        self._task = asyncio.create_task(self._run())

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            async with self._lock:
                if self._cancelled:
                    return
                try:
                    await self._callback()
                except Exception:
                    logger.exception("Auto-persist tick failed")

    async def cancel(self) -> None:
        """Stop ticking, waiting for an in-flight tick to finish."""
        if self._cancelled:
            return
        self._cancelled = True
        async with self._lock:
            self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between ``start`` and ``end``, never negative."""
    return max(0, int((end - start).total_seconds() // 60))


class TimerService:
    """
    Time session state machine for one actor.

    Idle -> Active <-> Paused -> Completed, with Active|Paused -> Cancelled.
    Every transition writes to the store first and only then changes local
    state, so a failed write leaves the session (and its auto-persist timer)
    as it was.
    """

    def __init__(
        self,
        store: DataStore,
        reconciler: ReconciliationService,
        actor_id: str,
        rate_per_minute: float,
        auto_persist_interval: float = 30.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize service for the current actor.

        Raises:
            AuthError: If no actor is known
        """
        if not actor_id:
            raise AuthError("No current actor")

        self.store = store
        self.reconciler = reconciler
        self.actor_id = actor_id
        self.rate_per_minute = rate_per_minute
        self.auto_persist_interval = auto_persist_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._current: Optional[TimeEntry] = None
        self._timer: Optional[AutoPersistTimer] = None

    @property
    def current(self) -> Optional[TimeEntry]:
        """The open (active or paused) session, if any."""
        return self._current

    @property
    def timer(self) -> Optional[AutoPersistTimer]:
        return self._timer

    # Timer handle

    def _start_timer(self) -> None:
        session_id = self._current.id
        self._timer = AutoPersistTimer(
            self.auto_persist_interval,
            lambda: self._persist_progress(session_id),
        )

    async def _cancel_timer(self) -> None:
        if self._timer is not None:
            await self._timer.cancel()
            self._timer = None

    async def _persist_progress(self, session_id: str) -> None:
        entry = self._current
        if entry is None or entry.id != session_id or entry.status != EntryStatus.ACTIVE:
            return

        now = self._clock()
        minutes = elapsed_minutes(entry.start_time, now)
        record = await self.store.update(TIME_ENTRIES, session_id, {
            "duration_minutes": minutes,
            "amount": entry_amount(minutes, entry.rate_per_minute),
            "updated_at": write_time(now, entry.updated_at),
        })

        # The session may have been replaced while the write was in flight
        if self._current is not None and self._current.id == session_id:
            self._adopt(record)

    def _adopt(self, record: dict) -> TimeEntry:
        entry = doc_to_entry(record)
        self._current = entry if entry.is_open else None
        self.reconciler.upsert_local(TIME_ENTRIES, record)
        return entry

    def _require(self, *statuses: EntryStatus) -> TimeEntry:
        if self._current is None:
            raise ValidationError("No session running", code="NO_SESSION")
        if self._current.status not in statuses:
            raise ValidationError(
                f"Session is {self._current.status.value}",
                code="INVALID_SESSION_STATE",
            )
        return self._current

    # Transitions

    async def start(
        self,
        scope_id: str,
        description: str = "",
        category: Optional[TaskCategory] = None,
    ) -> TimeEntry:
        """
        Open a new active session.

        Args:
            scope_id: Scope (project) the time is billed to
            description: Optional description
            category: Task category, inferred from the description when omitted

        Returns:
            Created time entry

        Raises:
            ValidationError: If a session is already open
            StoreError: If the entry cannot be persisted
        """
        if self._current is not None:
            raise ValidationError("Session already running", code="SESSION_ALREADY_OPEN")

        running = await self.store.query(
            TIME_ENTRIES,
            {
                "actor_id": self.actor_id,
                "scope_id": scope_id,
                "status": {"$in": [status.value for status in OPEN_STATUSES]},
            },
            per_page=1,
        )
        if running.items:
            raise ValidationError("Session already running", code="SESSION_ALREADY_OPEN")

        now = self._clock()
        entry = TimeEntry(
            actor_id=self.actor_id,
            scope_id=scope_id,
            description=description,
            category=category or infer_task_category(description),
            start_time=now,
            rate_per_minute=self.rate_per_minute,
            status=EntryStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )

        record = await self.store.create(TIME_ENTRIES, entry_to_doc(entry))
        entry = self._adopt(record)
        self._start_timer()

        logger.info("Started session %s on scope %s", entry.id, scope_id)
        return entry

    async def pause(self) -> TimeEntry:
        """
        Pause the active session.

        Raises:
            ValidationError: If no session is active
            StoreError: If the change cannot be persisted
        """
        entry = self._require(EntryStatus.ACTIVE)
        await self._cancel_timer()

        now = self._clock()
        minutes = elapsed_minutes(entry.start_time, now)
        try:
            record = await self.store.update(TIME_ENTRIES, entry.id, {
                "status": EntryStatus.PAUSED.value,
                "duration_minutes": minutes,
                "amount": entry_amount(minutes, entry.rate_per_minute),
                "updated_at": write_time(now, entry.updated_at),
            })
        except EngineError:
            self._start_timer()
            raise

        return self._adopt(record)

    async def resume(self) -> TimeEntry:
        """
        Resume the paused session.

        Raises:
            ValidationError: If no session is paused
            StoreError: If the change cannot be persisted
        """
        entry = self._require(EntryStatus.PAUSED)

        record = await self.store.update(TIME_ENTRIES, entry.id, {
            "status": EntryStatus.ACTIVE.value,
            "updated_at": write_time(self._clock(), entry.updated_at),
        })

        entry = self._adopt(record)
        self._start_timer()
        return entry

    async def stop(self) -> TimeEntry:
        """
        Complete the open session.

        Duration is always derived from the wall clock:
        ``floor((now - start) / 60s)``. Paused intervals are not subtracted.

        Returns:
            Completed time entry

        Raises:
            ValidationError: If no session is open
            StoreError: If the change cannot be persisted
        """
        entry = self._require(EntryStatus.ACTIVE, EntryStatus.PAUSED)
        was_active = entry.status == EntryStatus.ACTIVE

        # No tick may land after the final write
        await self._cancel_timer()

        end_time = max(self._clock(), entry.start_time)
        minutes = elapsed_minutes(entry.start_time, end_time)
        try:
            record = await self.store.update(TIME_ENTRIES, entry.id, {
                "status": EntryStatus.COMPLETED.value,
                "end_time": end_time,
                "duration_minutes": minutes,
                "amount": entry_amount(minutes, entry.rate_per_minute),
                "updated_at": write_time(end_time, entry.updated_at),
            })
        except EngineError:
            if was_active:
                self._start_timer()
            raise

        completed = self._adopt(record)
        logger.info("Stopped session %s after %d min", completed.id, completed.duration_minutes)
        return completed

    async def switch(
        self,
        scope_id: str,
        description: str = "",
        category: Optional[TaskCategory] = None,
    ) -> tuple[Optional[TimeEntry], TimeEntry]:
        """
        Stop the open session, if any, then start a new one.

        Returns:
            The stopped entry (or None) and the started entry
        """
        stopped = await self.stop() if self._current is not None else None
        started = await self.start(scope_id, description, category)
        return stopped, started

    async def cancel(self) -> TimeEntry:
        """
        Abandon the open session without billing it.

        Raises:
            ValidationError: If no session is open
            StoreError: If the change cannot be persisted
        """
        entry = self._require(EntryStatus.ACTIVE, EntryStatus.PAUSED)
        was_active = entry.status == EntryStatus.ACTIVE
        await self._cancel_timer()

        now = max(self._clock(), entry.start_time)
        try:
            record = await self.store.update(TIME_ENTRIES, entry.id, {
                "status": EntryStatus.CANCELLED.value,
                "end_time": now,
                "updated_at": write_time(now, entry.updated_at),
            })
        except EngineError:
            if was_active:
                self._start_timer()
            raise

        return self._adopt(record)

    # Records

    async def _owned_entry(self, entry_id: str) -> dict:
        record = await self.store.get(TIME_ENTRIES, entry_id)
        if not record or record.get("actor_id") != self.actor_id:
            raise NotFoundError("Time entry not found")
        return record

    async def update_description(self, entry_id: str, description: str) -> TimeEntry:
        """
        Change the description of the current session or of a completed entry.

        Raises:
            NotFoundError: If the entry does not exist or belongs to another actor
            ValidationError: If the entry is neither current nor completed
        """
        if self._current is not None and self._current.id == entry_id:
            previous = self._current.updated_at
        else:
            record = await self._owned_entry(entry_id)
            if record.get("status") != EntryStatus.COMPLETED.value:
                raise ValidationError("Only the current or a completed entry can be edited")
            previous = record.get("updated_at")

        record = await self.store.update(TIME_ENTRIES, entry_id, {
            "description": description,
            "updated_at": write_time(self._clock(), previous),
        })

        if self._current is not None and self._current.id == entry_id:
            return self._adopt(record)

        self.reconciler.upsert_local(TIME_ENTRIES, record)
        return doc_to_entry(record)

    async def delete_record(self, entry_id: str, confirmed: bool = False) -> bool:
        """
        Delete a time entry.

        Args:
            entry_id: Time entry ID
            confirmed: Must be True; deletion cannot be undone

        Raises:
            ValidationError: If not confirmed
            NotFoundError: If the entry does not exist or belongs to another actor
            ConflictError: If the entry is billed in a non-cancelled payment
        """
        if not confirmed:
            raise ValidationError("Deletion must be confirmed", code="CONFIRMATION_REQUIRED")

        await self._owned_entry(entry_id)

        billed = await self.store.query(
            PAYMENTS,
            {"time_entry_ids": entry_id, "status": {"$ne": PaymentStatus.CANCELLED.value}},
            per_page=1,
        )
        if billed.items:
            raise ConflictError("Time entry is part of a payment", code="ENTRY_ALREADY_BILLED")

        is_current = self._current is not None and self._current.id == entry_id
        was_active = is_current and self._current.status == EntryStatus.ACTIVE
        if is_current:
            await self._cancel_timer()

        try:
            await self.store.delete(TIME_ENTRIES, entry_id)
        except EngineError:
            if was_active:
                self._start_timer()
            raise

        if is_current:
            self._current = None
        self.reconciler.remove_local(TIME_ENTRIES, entry_id)
        return True

    # Totals

    def _live_minutes(self) -> int:
        if self._current is None or self._current.status != EntryStatus.ACTIVE:
            return 0
        return elapsed_minutes(self._current.start_time, self._clock())

    def total_today(self) -> int:
        """Completed minutes started today plus the live active session."""
        completed = sum(
            e.duration_minutes for e in self.reconciler.today_entries
            if e.status == EntryStatus.COMPLETED
        )
        return completed + self._live_minutes()

    def total_this_week(self) -> int:
        """Completed minutes started this week plus the live active session."""
        completed = sum(
            e.duration_minutes for e in self.reconciler.week_entries
            if e.status == EntryStatus.COMPLETED
        )
        return completed + self._live_minutes()

    # Lifecycle

    async def restore(self, scope_id: Optional[str] = None) -> Optional[TimeEntry]:
        """
        Adopt an open session already in the store, e.g. after a restart.

        Args:
            scope_id: Optional scope filter

        Returns:
            The restored session, or None
        """
        if self._current is not None:
            return self._current

        query = {
            "actor_id": self.actor_id,
            "status": {"$in": [status.value for status in OPEN_STATUSES]},
        }
        if scope_id is not None:
            query["scope_id"] = scope_id

        found = await self.store.query(TIME_ENTRIES, query, sort=[("updated_at", DESCENDING)], per_page=1)
        if not found.items:
            return None

        entry = self._adopt(found.items[0])
        if entry.status == EntryStatus.ACTIVE:
            self._start_timer()

        logger.info("Restored %s session %s", entry.status.value, entry.id)
        return entry

    async def close(self) -> None:
        """Release the auto-persist timer; the stored session is left as is."""
        await self._cancel_timer()
        self._current = None

    async def list_entries(
        self,
        scope_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        statuses: Optional[list[EntryStatus]] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Page[TimeEntry]:
        """
        List time entries for the actor with optional filtering.

        Args:
            scope_id: Optional scope filter
            start_date: Optional start date filter
            end_date: Optional end date filter
            statuses: Optional status filter
            page: Page number, from 1
            per_page: Page size

        Returns:
            Page of time entries, most recent first
        """
        query = {"actor_id": self.actor_id}

        if scope_id:
            query["scope_id"] = scope_id

        if start_date or end_date:
            query["start_time"] = {}
            if start_date:
                query["start_time"]["$gte"] = start_date
            if end_date:
                query["start_time"]["$lte"] = end_date

        if statuses:
            query["status"] = {"$in": [EntryStatus(s).value for s in statuses]}

        found = await self.store.query(
            TIME_ENTRIES, query, sort=[("start_time", DESCENDING)], page=page, per_page=per_page,
        )
        return Page[TimeEntry](
            items=[doc_to_entry(doc) for doc in found.items],
            pagination=found.pagination,
        )
