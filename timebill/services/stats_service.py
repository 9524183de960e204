"""Stats service - payment statistics over the reconciled mirrors."""
import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional

from timebill.models.events import ChangeType
from timebill.models.stats import Forecast, MovingAverage, PaymentStats, TaxReport
from timebill.services.reconciliation_service import MirrorChange, ReconciliationService
from timebill.utils import statistics

logger = logging.getLogger(__name__)

# Fields no statistic reads
DISPLAY_ONLY_FIELDS = frozenset({"notes", "description", "updated_at"})


class StatsService:
    """
    Derived payment statistics, recomputed lazily.

    Mirror changes that can move a metric (anything but an update touching
    only display fields) mark the snapshot stale, as does the local month
    rolling over; the next read of ``stats`` recomputes it.
    """

    def __init__(
        self,
        reconciler: ReconciliationService,
        tax_rate: float = 0.20,
        tz: tzinfo = timezone.utc,
        top_clients_limit: int = 5,
        months: int = 12,
        forecast_window: int = 6,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.reconciler = reconciler
        self.tax_rate = tax_rate
        self.tz = tz
        self.top_clients_limit = top_clients_limit
        self.months = months
        self.forecast_window = forecast_window
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stats: Optional[PaymentStats] = None
        reconciler.add_listener(self._on_mirror_change)

    def _on_mirror_change(self, change: MirrorChange) -> None:
        if change.type is not ChangeType.UPDATED or change.fields - DISPLAY_ONLY_FIELDS:
            self.invalidate()

    def _month(self, moment: datetime) -> tuple[int, int]:
        local = moment.astimezone(self.tz)
        return local.year, local.month

    @property
    def is_stale(self) -> bool:
        if self._stats is None:
            return True
        return self._month(self._stats.computed_at) != self._month(self._clock())

    def invalidate(self) -> None:
        self._stats = None

    @property
    def stats(self) -> PaymentStats:
        """Current statistics snapshot."""
        if self.is_stale:
            self._stats = statistics.compute_stats(
                self.reconciler.payments,
                self.reconciler.entries,
                now=self._clock(),
                tax_rate=self.tax_rate,
                tz=self.tz,
                top_clients_limit=self.top_clients_limit,
                months=self.months,
            )
            logger.debug("Recomputed stats for actor %s", self.reconciler.actor_id)
        return self._stats

    async def refresh(self) -> PaymentStats:
        """
        Reload the mirrors from the store and recompute.

        Raises:
            StoreError: If the store query fails
        """
        await self.reconciler.load()
        self.invalidate()
        return self.stats

    def _series(self, months: int):
        return statistics.monthly_series(self.reconciler.payments, self._clock(), months=months, tz=self.tz)

    def forecast(self, months_ahead: int = 3) -> Forecast:
        """Earnings forecast; the confidence score is a heuristic, not a guarantee."""
        return statistics.forecast(
            self._series(self.forecast_window),
            months_ahead=months_ahead,
            window=self.forecast_window,
        )

    def moving_average(self, periods: int = 3) -> Optional[MovingAverage]:
        """Average earnings of the last ``periods`` calendar months."""
        return statistics.moving_average(self._series(max(periods, 1)), periods)

    def tax_report(self, year: int, quarter: Optional[int] = None) -> TaxReport:
        return statistics.tax_report(
            self.reconciler.payments,
            year,
            quarter,
            self.tax_rate,
            now=self._clock(),
            tz=self.tz,
        )

    def close(self) -> None:
        self.reconciler.remove_listener(self._on_mirror_change)
