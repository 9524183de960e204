"""Payment record model definitions."""
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from timebill.models.time_entry import TaskCategory


class PaymentStatus(str, Enum):
    """Payment states. See ``timebill.utils.payment_status`` for transitions."""

    PENDING = "pending"
    VALIDATED = "validated"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    """How the payer settled the payment."""

    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    CHECK = "check"
    CASH = "cash"


class PaymentSortOption(str, Enum):
    """Sort keys accepted by the payment listing."""

    PAYMENT_DATE = "payment_date"
    AMOUNT = "amount"
    CREATED_AT = "created_at"
    STATUS = "status"


class PaymentLineItem(BaseModel):
    """One billed time entry, with the rate captured at billing time."""

    time_entry_id: str
    category: TaskCategory = TaskCategory.DEVELOPMENT
    minutes: int
    rate_per_minute: float
    amount_cents: int


class StatusChange(BaseModel):
    """Entry of a payment's status history."""

    status: PaymentStatus
    at: datetime
    reason: Optional[str] = None


class PaymentCreate(BaseModel):
    """Payment request model."""

    scope_id: str
    client_id: str
    period_start: date
    period_end: date
    time_entry_ids: list[str] = Field(min_length=1)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_period(self) -> "PaymentCreate":
        """Period must not end before it starts."""
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        return self


class PaymentRecord(BaseModel):
    """A billing unit aggregating time entries over a period."""

    id: Optional[str] = None
    actor_id: str
    client_id: str
    scope_id: str
    period_start: date
    period_end: date
    time_entry_ids: list[str] = []
    line_items: list[PaymentLineItem] = []
    total_minutes: int = 0
    amount_cents: int = 0
    status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[PaymentMethod] = None
    payment_date: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    notes: Optional[str] = None
    status_history: list[StatusChange] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_totals(self) -> "PaymentRecord":
        """Period ordering and line-item minutes must add up."""
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        if self.line_items and sum(item.minutes for item in self.line_items) != self.total_minutes:
            raise ValueError("total_minutes does not match line items")
        return self


class PaymentFilters(BaseModel):
    """Filters for the payment listing. Unset fields do not filter."""

    statuses: Optional[list[PaymentStatus]] = None
    payment_methods: Optional[list[PaymentMethod]] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    scope_ids: Optional[list[str]] = None
    client_ids: Optional[list[str]] = None
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None
    search_query: Optional[str] = None
    sort_by: PaymentSortOption = PaymentSortOption.PAYMENT_DATE
    sort_order: str = Field(default="desc", pattern="^(asc|desc)$")
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=20, ge=1, le=200)


class CategoryBreakdown(BaseModel):
    """Minutes and amount billed under one task category."""

    category: TaskCategory
    minutes: int
    amount_cents: int
    percentage: float


class PaymentCalculation(BaseModel):
    """Monetary breakdown of a set of time entries."""

    total_minutes: int
    subtotal_cents: int
    tax_rate: float
    tax_cents: int
    total_cents: int
    breakdown_by_category: list[CategoryBreakdown]


class PaymentCalculationRequest(BaseModel):
    """Request model for previewing a payment."""

    time_entry_ids: list[str] = Field(min_length=1)
