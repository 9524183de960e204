"""Per-actor composition of the engine services."""
import asyncio
import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from timebill.config import Settings
from timebill.errors import AuthError
from timebill.services.payment_service import PaymentService
from timebill.services.reconciliation_service import ReconciliationService, SubscriptionHandle
from timebill.services.stats_service import StatsService
from timebill.services.timer_service import TimerService
from timebill.store.base import DataStore
from timebill.utils.rates import billable_rate

logger = logging.getLogger(__name__)


class Workspace:
    """
    One actor's engine for one scope selection.

    Owns the subscription handle and the session timer; ``close()`` releases
    both. Changing scope rebuilds the mirrors for the new selection.
    """

    def __init__(
        self,
        store: DataStore,
        actor_id: str,
        rate_per_minute: float,
        scope_id: Optional[str] = None,
        auto_persist_interval: float = 30.0,
        tax_rate: float = 0.20,
        tz: tzinfo = ZoneInfo("UTC"),
        top_clients_limit: int = 5,
        stats_months: int = 12,
        forecast_window: int = 6,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not actor_id:
            raise AuthError("No current actor")

        self.store = store
        self.actor_id = actor_id
        self.rate_per_minute = rate_per_minute
        self.auto_persist_interval = auto_persist_interval
        self.tax_rate = tax_rate
        self.tz = tz
        self.top_clients_limit = top_clients_limit
        self.stats_months = stats_months
        self.forecast_window = forecast_window
        self.clock = clock
        self.scope_id: Optional[str] = None
        self._handle: Optional[SubscriptionHandle] = None
        self._build(scope_id)

    def _build(self, scope_id: Optional[str]) -> None:
        self.scope_id = scope_id
        self.reconciler = ReconciliationService(self.store, self.actor_id, scope_id, clock=self.clock, tz=self.tz)
        self.timers = TimerService(
            self.store,
            self.reconciler,
            self.actor_id,
            self.rate_per_minute,
            auto_persist_interval=self.auto_persist_interval,
            clock=self.clock,
        )
        self.payments = PaymentService(
            self.store,
            self.actor_id,
            reconciler=self.reconciler,
            tax_rate=self.tax_rate,
            clock=self.clock,
        )
        self.stats = StatsService(
            self.reconciler,
            tax_rate=self.tax_rate,
            tz=self.tz,
            top_clients_limit=self.top_clients_limit,
            months=self.stats_months,
            forecast_window=self.forecast_window,
            clock=self.clock,
        )

    async def open(self) -> "Workspace":
        """
        Subscribe to changes, load the baseline and restore an open session.

        Subscribing first means nothing written during the load is missed.
        """
        self._handle = await self.reconciler.subscribe()
        try:
            await self.reconciler.load()
            await self.timers.restore(self.scope_id)
        except Exception:
            await self._handle.close()
            self._handle = None
            raise

        logger.info("Opened workspace for actor %s (scope %s)", self.actor_id, self.scope_id or "all")
        return self

    async def select_scope(self, scope_id: Optional[str]) -> "Workspace":
        """Switch the mirrors to another scope, keeping the stored session."""
        await self.close()
        self._build(scope_id)
        return await self.open()

    async def close(self) -> None:
        """Release the subscription and the session timer."""
        await self.timers.close()
        self.stats.close()
        if self._handle is not None:
            await self._handle.close()
            self._handle = None


class WorkspaceRegistry:
    """
    Open workspaces keyed by actor, owned by the application.

    Workspaces unused for ``settings.workspace_idle_seconds`` are closed on
    the next lookup, unless a session is open in them.
    """

    def __init__(self, store: DataStore, settings: Settings, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.settings = settings
        self.clock = clock
        self._workspaces: dict[str, Workspace] = {}
        self._last_used: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._workspaces)

    def _now(self) -> datetime:
        return (self.clock or (lambda: datetime.now(timezone.utc)))()

    async def _evict_idle(self, now: datetime) -> None:
        if self.settings.workspace_idle_seconds <= 0:
            return
        cutoff = now - timedelta(seconds=self.settings.workspace_idle_seconds)
        for actor_id, last_used in list(self._last_used.items()):
            workspace = self._workspaces[actor_id]
            if last_used >= cutoff or workspace.timers.current is not None:
                continue
            del self._workspaces[actor_id]
            del self._last_used[actor_id]
            await workspace.close()
            logger.info("Closed idle workspace for actor %s", actor_id)

    async def get(self, actor_id: str) -> Workspace:
        """Return the actor's workspace, opening it on first use."""
        async with self._lock:
            now = self._now()
            await self._evict_idle(now)
            workspace = self._workspaces.get(actor_id)
            if workspace is None:
                workspace = Workspace(
                    self.store,
                    actor_id,
                    billable_rate(self.settings.default_rate_per_minute_cents),
                    auto_persist_interval=self.settings.auto_persist_interval_seconds,
                    tax_rate=self.settings.tax_rate,
                    tz=ZoneInfo(self.settings.timezone),
                    top_clients_limit=self.settings.top_clients_limit,
                    stats_months=self.settings.stats_months,
                    forecast_window=self.settings.forecast_window_months,
                    clock=self.clock,
                )
                await workspace.open()
                self._workspaces[actor_id] = workspace
            self._last_used[actor_id] = now
            return workspace

    async def close_all(self) -> None:
        async with self._lock:
            for workspace in self._workspaces.values():
                await workspace.close()
            self._workspaces.clear()
            self._last_used.clear()
