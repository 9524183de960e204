"""Earnings statistics derived from payment and time records. Pure functions."""
import math
from datetime import date, datetime, time, timezone, tzinfo
from typing import Iterable, Optional

from timebill.models.payment import PaymentRecord, PaymentStatus
from timebill.models.stats import (
    Forecast,
    Growth,
    MonthlyEarnings,
    MovingAverage,
    PaymentMethodBreakdown,
    PaymentStats,
    ProjectEarnings,
    QuarterlyTax,
    TaxReport,
    TaxSummary,
    TopClient,
    Trend,
)
from timebill.models.time_entry import EntryStatus, TimeEntry
from timebill.utils.calculator import round_half_up

EARNED_STATUSES = frozenset({PaymentStatus.PAID})
OUTSTANDING_STATUSES = frozenset({
    PaymentStatus.PENDING,
    PaymentStatus.VALIDATED,
    PaymentStatus.PROCESSING,
})

TREND_DEADBAND = 5.0


def as_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    """
    Move a (year, month) pair by ``delta`` months.

    Examples:
        >>> shift_month(2025, 1, -1)
        (2024, 12)
        >>> shift_month(2025, 11, 3)
        (2026, 2)
    """
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def payment_moment(payment: PaymentRecord) -> datetime:
    """When a payment counts as earned: payment date, else creation, else period end."""
    if payment.payment_date is not None:
        return as_aware(payment.payment_date)
    if payment.created_at is not None:
        return as_aware(payment.created_at)
    return datetime.combine(payment.period_end, time.min, tzinfo=timezone.utc)


def _month_of(payment: PaymentRecord, tz: tzinfo) -> tuple[int, int]:
    moment = payment_moment(payment).astimezone(tz)
    return moment.year, moment.month


def earned(payments: Iterable[PaymentRecord]) -> list[PaymentRecord]:
    """Payments whose money reached the payee."""
    return [p for p in payments if p.status in EARNED_STATUSES]


def compute_growth(current: float, previous: float) -> Growth:
    """
    Period-over-period change with a +/-5% deadband for the trend.

    A zero previous period counts as +100% when the current one is positive.

    Examples:
        >>> compute_growth(500, 0).percentage
        100.0
        >>> compute_growth(102, 100).trend.value
        'stable'
    """
    if previous == 0:
        percentage = 100.0 if current > 0 else 0.0
    else:
        percentage = (current - previous) / previous * 100

    if percentage > TREND_DEADBAND:
        trend = Trend.UP
    elif percentage < -TREND_DEADBAND:
        trend = Trend.DOWN
    else:
        trend = Trend.STABLE

    return Growth(percentage=round(percentage, 2), trend=trend)


def monthly_series(
    payments: Iterable[PaymentRecord],
    now: datetime,
    months: int = 12,
    tz: tzinfo = timezone.utc,
) -> list[MonthlyEarnings]:
    """Earned amounts per calendar month, oldest first, ending with the month of ``now``."""
    local_now = as_aware(now).astimezone(tz)
    buckets: dict[tuple[int, int], list[PaymentRecord]] = {}
    for payment in earned(payments):
        buckets.setdefault(_month_of(payment, tz), []).append(payment)

    series = []
    for offset in range(months - 1, -1, -1):
        year, month = shift_month(local_now.year, local_now.month, -offset)
        bucket = buckets.get((year, month), [])
        series.append(
            MonthlyEarnings(
                year=year,
                month=month,
                earnings_cents=sum(p.amount_cents for p in bucket),
                hours_worked=round(sum(p.total_minutes for p in bucket) / 60, 2),
                payments_count=len(bucket),
                projects_count=len({p.scope_id for p in bucket}),
            )
        )
    return series


def moving_average(series: list[MonthlyEarnings], periods: int = 3) -> Optional[MovingAverage]:
    """Average of the last ``periods`` months, or None when the series is shorter."""
    if periods <= 0 or len(series) < periods:
        return None

    recent = series[-periods:]
    return MovingAverage(
        periods=periods,
        earnings_cents=round_half_up(sum(m.earnings_cents for m in recent) / periods),
        hours=round(sum(m.hours_worked for m in recent) / periods, 2),
    )


def forecast(series: list[MonthlyEarnings], months_ahead: int = 3, window: int = 6) -> Forecast:
    """
    Extrapolate earnings ``months_ahead`` months past the last month.

    The growth rate is the mean month-over-month growth over the trailing
    ``window`` months (a month following a zero month counts as 0% growth).
    Confidence is a heuristic: 100 minus the coefficient of variation of the
    window in percent, clamped to [0, 100]. It says how regular the earnings
    were, nothing more.
    """
    recent = series[-window:]
    if len(recent) < 3:
        return Forecast(months_ahead=months_ahead, predicted_earnings_cents=0, average_growth_rate=0.0, confidence=0)

    growth_total = 0.0
    for previous, current in zip(recent, recent[1:]):
        if previous.earnings_cents > 0:
            growth_total += (current.earnings_cents - previous.earnings_cents) / previous.earnings_cents
    average_growth = growth_total / (len(recent) - 1)

    last = recent[-1].earnings_cents
    predicted = max(0, round_half_up(last * (1 + average_growth) ** months_ahead))

    values = [m.earnings_cents for m in recent]
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    cv = math.sqrt(variance) / mean if mean > 0 else 1.0
    confidence = max(0.0, min(100.0, 100 - cv * 100))

    return Forecast(
        months_ahead=months_ahead,
        predicted_earnings_cents=predicted,
        average_growth_rate=round(average_growth, 4),
        confidence=round_half_up(confidence),
    )


def top_clients(payments: Iterable[PaymentRecord], limit: int = 5) -> list[TopClient]:
    """Payers ranked by earned amount."""
    clients: dict[str, dict] = {}
    for payment in earned(payments):
        client = clients.setdefault(
            payment.client_id,
            {"earnings": 0, "minutes": 0, "projects": set(), "last": None},
        )
        client["earnings"] += payment.amount_cents
        client["minutes"] += payment.total_minutes
        client["projects"].add(payment.scope_id)
        moment = payment_moment(payment)
        if client["last"] is None or moment > client["last"]:
            client["last"] = moment

    ranked = sorted(clients.items(), key=lambda item: item[1]["earnings"], reverse=True)
    return [
        TopClient(
            client_id=client_id,
            total_earnings_cents=data["earnings"],
            total_hours=round(data["minutes"] / 60, 2),
            projects_count=len(data["projects"]),
            last_payment_date=data["last"],
        )
        for client_id, data in ranked[:limit]
    ]


def earnings_by_project(payments: Iterable[PaymentRecord]) -> list[ProjectEarnings]:
    """Earned amounts per project, highest first."""
    projects: dict[str, dict] = {}
    for payment in earned(payments):
        project = projects.setdefault(
            payment.scope_id,
            {
                "client_id": payment.client_id,
                "earnings": 0,
                "minutes": 0,
                "start": payment.period_start,
                "end": payment.period_end,
            },
        )
        project["earnings"] += payment.amount_cents
        project["minutes"] += payment.total_minutes
        project["start"] = min(project["start"], payment.period_start)
        project["end"] = max(project["end"], payment.period_end)

    result = []
    for scope_id, data in projects.items():
        hours = data["minutes"] / 60
        result.append(
            ProjectEarnings(
                scope_id=scope_id,
                client_id=data["client_id"],
                total_earnings_cents=data["earnings"],
                total_hours=round(hours, 2),
                average_hourly_rate_cents=round_half_up(data["earnings"] / hours) if hours > 0 else 0,
                start_date=data["start"],
                end_date=data["end"],
            )
        )
    return sorted(result, key=lambda p: p.total_earnings_cents, reverse=True)


def payment_methods_breakdown(payments: Iterable[PaymentRecord]) -> list[PaymentMethodBreakdown]:
    """Share of earned amounts per payment method. Payments without a method are left out."""
    paid = [p for p in earned(payments) if p.payment_method is not None]
    total = sum(p.amount_cents for p in paid)
    methods: dict = {}
    for payment in paid:
        bucket = methods.setdefault(payment.payment_method, [0, 0])
        bucket[0] += 1
        bucket[1] += payment.amount_cents

    return [
        PaymentMethodBreakdown(
            method=method,
            count=count,
            total_cents=amount,
            percentage=round(amount / total * 100, 2) if total else 0.0,
        )
        for method, (count, amount) in methods.items()
    ]


def _quarter(month: int) -> int:
    return (month - 1) // 3 + 1


def tax_summary(
    payments: Iterable[PaymentRecord],
    tax_rate: float,
    tz: tzinfo = timezone.utc,
) -> TaxSummary:
    """Tax owed on earned payments, overall and per calendar quarter."""
    quarters: dict[tuple[int, int], int] = {}
    for payment in earned(payments):
        year, month = _month_of(payment, tz)
        key = (year, _quarter(month))
        quarters[key] = quarters.get(key, 0) + payment.amount_cents

    by_quarter = []
    for (year, quarter), gross in sorted(quarters.items()):
        tax = round_half_up(gross * tax_rate)
        by_quarter.append(
            QuarterlyTax(year=year, quarter=quarter, gross_cents=gross, tax_cents=tax, net_cents=gross - tax)
        )

    gross = sum(q.gross_cents for q in by_quarter)
    tax = sum(q.tax_cents for q in by_quarter)
    return TaxSummary(
        total_gross_cents=gross,
        total_tax_cents=tax,
        total_net_cents=gross - tax,
        tax_rate=tax_rate,
        by_quarter=by_quarter,
    )


def tax_report(
    payments: Iterable[PaymentRecord],
    year: int,
    quarter: Optional[int],
    tax_rate: float,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> TaxReport:
    """Income earned in ``year`` (or one of its quarters) and the tax owed on it."""
    included = []
    for payment in earned(payments):
        p_year, p_month = _month_of(payment, tz)
        if p_year == year and (quarter is None or _quarter(p_month) == quarter):
            included.append(payment)

    income = sum(p.amount_cents for p in included)
    return TaxReport(
        year=year,
        quarter=quarter,
        total_income_cents=income,
        taxable_income_cents=income,
        tax_owed_cents=round_half_up(income * tax_rate),
        payments_included=len(included),
        generated_at=now,
    )


def compute_stats(
    payments: list[PaymentRecord],
    entries: list[TimeEntry],
    now: datetime,
    tax_rate: float = 0.20,
    tz: tzinfo = timezone.utc,
    top_clients_limit: int = 5,
    months: int = 12,
) -> PaymentStats:
    """
    Snapshot of every derived metric.

    Earnings count paid payments only; pending, validated and processing
    payments are reported as outstanding. Hours come from completed time
    entries.
    """
    earned_payments = earned(payments)
    total_earnings = sum(p.amount_cents for p in earned_payments)
    completed_minutes = sum(e.duration_minutes for e in entries if e.status == EntryStatus.COMPLETED)
    total_hours = completed_minutes / 60

    series = monthly_series(payments, now, months=max(months, 2), tz=tz)
    current_month = series[-1].earnings_cents
    last_month = series[-2].earnings_cents

    by_status = {status.value: 0 for status in PaymentStatus}
    for payment in payments:
        by_status[payment.status.value] += 1

    return PaymentStats(
        total_earnings_cents=total_earnings,
        total_hours_worked=round(total_hours, 2),
        total_projects=len({p.scope_id for p in payments} | {e.scope_id for e in entries}),
        average_hourly_rate_cents=round_half_up(total_earnings / total_hours) if total_hours > 0 else 0,
        payments_by_status=by_status,
        total_payments_received=by_status[PaymentStatus.PAID.value],
        pending_payments_cents=sum(p.amount_cents for p in payments if p.status in OUTSTANDING_STATUSES),
        current_month_earnings_cents=current_month,
        last_month_earnings_cents=last_month,
        growth=compute_growth(current_month, last_month),
        top_clients=top_clients(payments, top_clients_limit),
        earnings_by_month=series[-months:] if months > 0 else [],
        earnings_by_project=earnings_by_project(payments),
        payment_methods_breakdown=payment_methods_breakdown(payments),
        tax_summary=tax_summary(payments, tax_rate, tz),
        computed_at=now,
    )


def period_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    """Start of ``day`` and start of its week (Monday), as aware datetimes in ``tz``."""
    day_start = datetime.combine(day, time.min, tzinfo=tz)
    week_start = datetime.combine(date.fromordinal(day.toordinal() - day.weekday()), time.min, tzinfo=tz)
    return day_start, week_start
