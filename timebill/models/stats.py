"""Statistics model definitions."""
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from timebill.models.payment import PaymentMethod


class Trend(str, Enum):
    """Direction of a period-over-period change."""

    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class Growth(BaseModel):
    """Percentage change between two periods."""

    percentage: float
    trend: Trend


class TopClient(BaseModel):
    """Earnings attributed to one payer."""

    client_id: str
    total_earnings_cents: int
    total_hours: float
    projects_count: int
    last_payment_date: Optional[datetime] = None


class MonthlyEarnings(BaseModel):
    """One calendar month of the earnings series."""

    year: int
    month: int
    earnings_cents: int
    hours_worked: float
    payments_count: int
    projects_count: int


class ProjectEarnings(BaseModel):
    """Earnings attributed to one project."""

    scope_id: str
    client_id: str
    total_earnings_cents: int
    total_hours: float
    average_hourly_rate_cents: int
    start_date: date
    end_date: date


class PaymentMethodBreakdown(BaseModel):
    """Share of earnings settled through one payment method."""

    method: PaymentMethod
    count: int
    total_cents: int
    percentage: float


class QuarterlyTax(BaseModel):
    """Gross, tax and net for one calendar quarter."""

    year: int
    quarter: int
    gross_cents: int
    tax_cents: int
    net_cents: int


class TaxSummary(BaseModel):
    """Tax owed on earned payments."""

    total_gross_cents: int
    total_tax_cents: int
    total_net_cents: int
    tax_rate: float
    by_quarter: list[QuarterlyTax]


class TaxReport(BaseModel):
    """Income and tax owed for a year or one of its quarters."""

    year: int
    quarter: Optional[int] = None
    total_income_cents: int
    taxable_income_cents: int
    tax_owed_cents: int
    payments_included: int
    generated_at: datetime


class PaymentStats(BaseModel):
    """Snapshot of derived metrics over the reconciled records."""

    total_earnings_cents: int
    total_hours_worked: float
    total_projects: int
    average_hourly_rate_cents: int
    payments_by_status: dict[str, int]
    total_payments_received: int
    pending_payments_cents: int
    current_month_earnings_cents: int
    last_month_earnings_cents: int
    growth: Growth
    top_clients: list[TopClient]
    earnings_by_month: list[MonthlyEarnings]
    earnings_by_project: list[ProjectEarnings]
    payment_methods_breakdown: list[PaymentMethodBreakdown]
    tax_summary: TaxSummary
    computed_at: datetime


class MovingAverage(BaseModel):
    """Average of the trailing months of the earnings series."""

    periods: int
    earnings_cents: int
    hours: float


class Forecast(BaseModel):
    """
    Trend-extrapolated earnings.

    ``confidence`` is a heuristic (100 minus the coefficient of variation of
    the window, in percent), not a statistical interval.
    """

    months_ahead: int
    predicted_earnings_cents: int
    average_growth_rate: float
    confidence: int
