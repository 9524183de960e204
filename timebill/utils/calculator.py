"""Payment calculation utilities. Pure functions, no I/O."""
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from timebill.models.payment import CategoryBreakdown, PaymentCalculation
from timebill.models.time_entry import TaskCategory, TimeEntry

DEFAULT_TAX_RATE = 0.20

# Checked in order, first match wins
_CATEGORY_PATTERNS = [
    (TaskCategory.DESIGN, re.compile(r"\b(design|ui|ux)")),
    (TaskCategory.TESTING, re.compile(r"\b(test|bug)")),
    (TaskCategory.MEETING, re.compile(r"\bmeeting")),
    (TaskCategory.DOCUMENTATION, re.compile(r"\bdoc")),
    (TaskCategory.MANAGEMENT, re.compile(r"\b(management|planning)")),
    (TaskCategory.RESEARCH, re.compile(r"\bresearch")),
    (TaskCategory.SUPPORT, re.compile(r"\bsupport")),
]


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer, halves away from zero.

    Examples:
        >>> round_half_up(2.5)
        3
        >>> round_half_up(1350.0)
        1350
    """
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def infer_task_category(description: Optional[str]) -> TaskCategory:
    """
    Guess the task category from a free-text description.

    Examples:
        >>> infer_task_category("Fix login bug")
        <TaskCategory.TESTING: 'testing'>
        >>> infer_task_category("")
        <TaskCategory.DEVELOPMENT: 'development'>
    """
    if not description:
        return TaskCategory.DEVELOPMENT

    text = description.lower()
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(text):
            return category

    return TaskCategory.DEVELOPMENT


def entry_amount(minutes: int, rate_per_minute: float) -> int:
    """Amount in minor units billed for ``minutes`` at ``rate_per_minute``."""
    return round_half_up(minutes * rate_per_minute)


def calculate(entries: Iterable[TimeEntry], tax_rate: float = DEFAULT_TAX_RATE) -> PaymentCalculation:
    """
    Monetary breakdown of a set of time entries.

    Each entry is billed at its own rate snapshot. Categories are listed in
    the order they are first seen.

    Args:
        entries: Time entries to bill
        tax_rate: Fraction applied to the subtotal

    Returns:
        Totals, tax and per-category split
    """
    total_minutes = 0
    subtotal = 0
    by_category: dict[TaskCategory, list[int]] = {}

    for entry in entries:
        minutes = entry.duration_minutes or 0
        amount = entry_amount(minutes, entry.rate_per_minute)
        total_minutes += minutes
        subtotal += amount
        bucket = by_category.setdefault(entry.category, [0, 0])
        bucket[0] += minutes
        bucket[1] += amount

    tax = round_half_up(subtotal * tax_rate)

    breakdown = [
        CategoryBreakdown(
            category=category,
            minutes=minutes,
            amount_cents=amount,
            percentage=round(minutes / total_minutes * 100, 1) if total_minutes else 0.0,
        )
        for category, (minutes, amount) in by_category.items()
    ]

    return PaymentCalculation(
        total_minutes=total_minutes,
        subtotal_cents=subtotal,
        tax_rate=tax_rate,
        tax_cents=tax,
        total_cents=subtotal + tax,
        breakdown_by_category=breakdown,
    )


def format_duration(minutes: int) -> str:
    """
    Human readable duration.

    Examples:
        >>> format_duration(125)
        '2h 5min'
        >>> format_duration(120)
        '2h'
        >>> format_duration(45)
        '45min'
    """
    hours, mins = divmod(minutes, 60)
    if hours and mins:
        return f"{hours}h {mins}min"
    if hours:
        return f"{hours}h"
    return f"{mins}min"


def format_currency(cents: int, currency: str = "EUR") -> str:
    """
    Format minor units as a major-unit amount.

    Examples:
        >>> format_currency(123456)
        '1,234.56 EUR'
    """
    return f"{cents / 100:,.2f} {currency}"
