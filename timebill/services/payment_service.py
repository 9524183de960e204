"""Payment service - business logic for payment records."""
import logging
import re
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional

from timebill.errors import ConflictError, NotFoundError, ValidationError
from timebill.models.pagination import Page
from timebill.models.payment import (
    PaymentCalculation,
    PaymentCreate,
    PaymentFilters,
    PaymentLineItem,
    PaymentMethod,
    PaymentRecord,
    PaymentSortOption,
    PaymentStatus,
    StatusChange,
)
from timebill.models.time_entry import EntryStatus, TimeEntry
from timebill.services.reconciliation_service import ReconciliationService
from timebill.services.records import (
    doc_to_entry,
    doc_to_payment,
    payment_to_doc,
    status_change_to_doc,
    write_time,
)
from timebill.store.base import ASCENDING, DESCENDING, PAYMENTS, TIME_ENTRIES, DataStore
from timebill.utils import calculator
from timebill.utils.payment_status import PROCESSOR_STATUSES, check_transition
from timebill.utils.statistics import as_aware

logger = logging.getLogger(__name__)

_SORT_FIELDS = {
    PaymentSortOption.PAYMENT_DATE: "payment_date",
    PaymentSortOption.AMOUNT: "amount_cents",
    PaymentSortOption.CREATED_AT: "created_at",
    PaymentSortOption.STATUS: "status",
}


class PaymentService:
    """Service for creating, transitioning and listing payment records."""

    def __init__(
        self,
        store: DataStore,
        actor_id: str,
        reconciler: Optional[ReconciliationService] = None,
        tax_rate: float = calculator.DEFAULT_TAX_RATE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize service with a Data Store and the payee."""
        self.store = store
        self.actor_id = actor_id
        self.reconciler = reconciler
        self.tax_rate = tax_rate
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _publish_local(self, record: dict) -> None:
        if self.reconciler is not None:
            self.reconciler.upsert_local(PAYMENTS, record)

    async def _owned_entries(self, entry_ids: list[str]) -> list[TimeEntry]:
        entries = []
        for entry_id in entry_ids:
            record = await self.store.get(TIME_ENTRIES, entry_id)
            if not record or record.get("actor_id") != self.actor_id:
                raise NotFoundError(f"Time entry {entry_id} not found")
            entries.append(doc_to_entry(record))
        return entries

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        """
        Get a payment owned by the actor.

        Raises:
            NotFoundError: If the payment does not exist
        """
        record = await self.store.get(PAYMENTS, payment_id)
        if not record or record.get("actor_id") != self.actor_id:
            raise NotFoundError("Payment not found")
        return doc_to_payment(record)

    async def calculate(self, entry_ids: list[str]) -> PaymentCalculation:
        """
        Preview the amounts a payment over ``entry_ids`` would carry.

        Raises:
            NotFoundError: If an entry does not exist
        """
        entries = await self._owned_entries(entry_ids)
        return calculator.calculate(entries, self.tax_rate)

    async def create_payment(self, payment_create: PaymentCreate) -> PaymentRecord:
        """
        Create a pending payment over completed time entries.

        Args:
            payment_create: Payment creation data

        Returns:
            Created payment record, with each entry's rate captured in its line item

        Raises:
            NotFoundError: If an entry does not exist
            ValidationError: If an entry is not completed, belongs to another
                scope or falls outside the period
            ConflictError: If an entry is already part of another payment
        """
        entry_ids = list(dict.fromkeys(payment_create.time_entry_ids))
        entries = await self._owned_entries(entry_ids)

        period_start = datetime.combine(payment_create.period_start, time.min, tzinfo=timezone.utc)
        period_end = datetime.combine(payment_create.period_end + timedelta(days=1), time.min, tzinfo=timezone.utc)

        for entry in entries:
            if entry.status != EntryStatus.COMPLETED:
                raise ValidationError(f"Time entry {entry.id} is not completed")
            if entry.scope_id != payment_create.scope_id:
                raise ValidationError(f"Time entry {entry.id} belongs to another scope")
            if not period_start <= entry.start_time < period_end:
                raise ValidationError(f"Time entry {entry.id} is outside the payment period")

        billed = await self.store.query(PAYMENTS, {
            "time_entry_ids": {"$in": entry_ids},
            "status": {"$ne": PaymentStatus.CANCELLED.value},
        })
        if billed.items:
            raise ConflictError(
                "Time entries are already part of another payment",
                code="ENTRY_ALREADY_BILLED",
            )

        line_items = []
        for entry in entries:
            line_items.append(PaymentLineItem(
                time_entry_id=entry.id,
                category=entry.category,
                minutes=entry.duration_minutes,
                rate_per_minute=entry.rate_per_minute,
                amount_cents=calculator.entry_amount(entry.duration_minutes, entry.rate_per_minute),
            ))

        now = self._clock()
        payment = PaymentRecord(
            actor_id=self.actor_id,
            client_id=payment_create.client_id,
            scope_id=payment_create.scope_id,
            period_start=payment_create.period_start,
            period_end=payment_create.period_end,
            time_entry_ids=entry_ids,
            line_items=line_items,
            total_minutes=sum(item.minutes for item in line_items),
            amount_cents=sum(item.amount_cents for item in line_items),
            status=PaymentStatus.PENDING,
            notes=payment_create.notes,
            status_history=[StatusChange(status=PaymentStatus.PENDING, at=now)],
            created_at=now,
            updated_at=now,
        )

        record = await self.store.create(PAYMENTS, payment_to_doc(payment))
        self._publish_local(record)

        logger.info("Created payment %s for %d entries", record["id"], len(entry_ids))
        return doc_to_payment(record)

    async def transition(
        self,
        payment_id: str,
        status: PaymentStatus,
        reason: Optional[str] = None,
        method: Optional[PaymentMethod] = None,
        occurred_at: Optional[datetime] = None,
    ) -> PaymentRecord:
        """
        Move a payment to ``status``.

        Args:
            payment_id: Payment ID
            status: Target status
            reason: Reason recorded in the history (required for disputes)
            method: Payment method, recorded when the payment is paid
            occurred_at: When the change happened (defaults to now)

        Returns:
            Updated payment record

        Raises:
            NotFoundError: If the payment does not exist
            ConflictError: If the transition is not allowed
            ValidationError: If a dispute has no reason
        """
        status = PaymentStatus(status)
        payment = await self.get_payment(payment_id)
        check_transition(payment.status, status)

        if status == PaymentStatus.DISPUTED and not (reason and reason.strip()):
            raise ValidationError("A dispute requires a reason", code="REASON_REQUIRED")

        now = write_time(self._clock(), payment.updated_at)
        at = as_aware(occurred_at) if occurred_at else now
        history = payment.status_history + [StatusChange(status=status, at=at, reason=reason)]

        patch = {
            "status": status.value,
            "status_history": [status_change_to_doc(change) for change in history],
            "updated_at": now,
        }
        if status == PaymentStatus.PAID:
            patch["payment_date"] = at
            if method is not None:
                patch["payment_method"] = PaymentMethod(method).value
        if status == PaymentStatus.DISPUTED:
            patch["dispute_reason"] = reason

        record = await self.store.update(PAYMENTS, payment_id, patch)
        self._publish_local(record)

        logger.info("Payment %s: %s -> %s", payment_id, payment.status.value, status.value)
        return doc_to_payment(record)

    async def validate_payment(self, payment_id: str) -> PaymentRecord:
        """Payee accepts the payment."""
        return await self.transition(payment_id, PaymentStatus.VALIDATED)

    async def cancel_payment(self, payment_id: str, reason: Optional[str] = None) -> PaymentRecord:
        """Payee cancels the payment; its entries become billable again."""
        return await self.transition(payment_id, PaymentStatus.CANCELLED, reason=reason)

    async def dispute_payment(self, payment_id: str, reason: str) -> PaymentRecord:
        """Payee disputes the payment."""
        return await self.transition(payment_id, PaymentStatus.DISPUTED, reason=reason)

    async def record_processor_status(
        self,
        payment_id: str,
        status: PaymentStatus,
        method: Optional[PaymentMethod] = None,
        occurred_at: Optional[datetime] = None,
    ) -> PaymentRecord:
        """
        Record a status reported by the payment processor.

        Raises:
            ValidationError: If ``status`` is not a processor status
        """
        if PaymentStatus(status) not in PROCESSOR_STATUSES:
            raise ValidationError(f"Status {PaymentStatus(status).value} is not reported by the payment processor")
        return await self.transition(payment_id, status, method=method, occurred_at=occurred_at)

    async def list_payments(self, filters: Optional[PaymentFilters] = None) -> Page[PaymentRecord]:
        """
        List the actor's payments.

        Args:
            filters: Filters, sort and paging (defaults: payment date desc, 20 per page)

        Returns:
            Page of payment records
        """
        filters = filters or PaymentFilters()
        query = {"actor_id": self.actor_id}

        if filters.statuses:
            query["status"] = {"$in": [s.value for s in filters.statuses]}
        if filters.payment_methods:
            query["payment_method"] = {"$in": [m.value for m in filters.payment_methods]}
        if filters.scope_ids:
            query["scope_id"] = {"$in": filters.scope_ids}
        if filters.client_ids:
            query["client_id"] = {"$in": filters.client_ids}

        if filters.date_from or filters.date_to:
            query["payment_date"] = {}
            if filters.date_from:
                query["payment_date"]["$gte"] = as_aware(filters.date_from)
            if filters.date_to:
                query["payment_date"]["$lte"] = as_aware(filters.date_to)

        if filters.min_amount_cents is not None or filters.max_amount_cents is not None:
            query["amount_cents"] = {}
            if filters.min_amount_cents is not None:
                query["amount_cents"]["$gte"] = filters.min_amount_cents
            if filters.max_amount_cents is not None:
                query["amount_cents"]["$lte"] = filters.max_amount_cents

        if filters.search_query:
            query["notes"] = {"$regex": re.escape(filters.search_query), "$options": "i"}

        direction = ASCENDING if filters.sort_order == "asc" else DESCENDING
        sort = [(_SORT_FIELDS[filters.sort_by], direction), ("created_at", DESCENDING)]

        found = await self.store.query(PAYMENTS, query, sort=sort, page=filters.page, per_page=filters.per_page)
        return Page[PaymentRecord](
            items=[doc_to_payment(doc) for doc in found.items],
            pagination=found.pagination,
        )

