"""Conversion between stored documents and engine models."""
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from timebill.models.payment import PaymentRecord
from timebill.models.time_entry import TimeEntry


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def write_time(now: datetime, previous: Optional[datetime]) -> datetime:
    """
    Timestamp for a new write of a record last written at ``previous``.

    Successive writes of one record get strictly increasing timestamps, in
    steps of a millisecond (the precision BSON keeps).
    """
    previous = _aware(previous)
    if previous is not None and now <= previous:
        return previous + timedelta(milliseconds=1)
    return now


def _to_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    return value


def _to_datetime(value: date) -> datetime:
    # Store dates as datetimes (BSON has no date type)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def doc_to_entry(doc: dict) -> TimeEntry:
    """
    Convert stored document to TimeEntry model.

    Raises:
        pydantic.ValidationError: If the document is incomplete
    """
    return TimeEntry(
        id=doc.get("id"),
        actor_id=doc.get("actor_id"),
        scope_id=doc.get("scope_id"),
        description=doc.get("description") or "",
        category=doc.get("category") or "development",
        start_time=_aware(doc.get("start_time")),
        end_time=_aware(doc.get("end_time")),
        duration_minutes=doc.get("duration_minutes") or 0,
        rate_per_minute=doc.get("rate_per_minute") or 0.0,
        amount=doc.get("amount") or 0,
        status=doc.get("status") or "active",
        created_at=_aware(doc.get("created_at")),
        updated_at=_aware(doc.get("updated_at")),
    )


def entry_to_doc(entry: TimeEntry) -> dict:
    """Convert TimeEntry model to a storable document."""
    return {
        "actor_id": entry.actor_id,
        "scope_id": entry.scope_id,
        "description": entry.description,
        "category": entry.category.value,
        "start_time": entry.start_time,
        "end_time": entry.end_time,
        "duration_minutes": entry.duration_minutes,
        "rate_per_minute": entry.rate_per_minute,
        "amount": entry.amount,
        "status": entry.status.value,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
    }


def doc_to_payment(doc: dict) -> PaymentRecord:
    """
    Convert stored document to PaymentRecord model.

    Raises:
        pydantic.ValidationError: If the document is incomplete
    """
    history = [
        {**change, "at": _aware(change.get("at"))}
        for change in doc.get("status_history") or []
    ]
    return PaymentRecord(
        id=doc.get("id"),
        actor_id=doc.get("actor_id"),
        client_id=doc.get("client_id"),
        scope_id=doc.get("scope_id"),
        period_start=_to_date(doc.get("period_start")),
        period_end=_to_date(doc.get("period_end")),
        time_entry_ids=doc.get("time_entry_ids") or [],
        line_items=doc.get("line_items") or [],
        total_minutes=doc.get("total_minutes") or 0,
        amount_cents=doc.get("amount_cents") or 0,
        status=doc.get("status") or "pending",
        payment_method=doc.get("payment_method"),
        payment_date=_aware(doc.get("payment_date")),
        dispute_reason=doc.get("dispute_reason"),
        notes=doc.get("notes"),
        status_history=history,
        created_at=_aware(doc.get("created_at")),
        updated_at=_aware(doc.get("updated_at")),
    )


def payment_to_doc(payment: PaymentRecord) -> dict:
    """Convert PaymentRecord model to a storable document."""
    return {
        "actor_id": payment.actor_id,
        "client_id": payment.client_id,
        "scope_id": payment.scope_id,
        "period_start": _to_datetime(payment.period_start),
        "period_end": _to_datetime(payment.period_end),
        "time_entry_ids": list(payment.time_entry_ids),
        "line_items": [
            {**item.model_dump(), "category": item.category.value}
            for item in payment.line_items
        ],
        "total_minutes": payment.total_minutes,
        "amount_cents": payment.amount_cents,
        "status": payment.status.value,
        "payment_method": payment.payment_method.value if payment.payment_method else None,
        "payment_date": payment.payment_date,
        "dispute_reason": payment.dispute_reason,
        "notes": payment.notes,
        "status_history": [status_change_to_doc(change) for change in payment.status_history],
        "created_at": payment.created_at,
        "updated_at": payment.updated_at,
    }


def status_change_to_doc(change) -> dict:
    """Convert StatusChange model to a storable document."""
    return {"status": change.status.value, "at": change.at, "reason": change.reason}
