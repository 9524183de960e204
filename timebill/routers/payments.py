"""Payment endpoints - billing, status changes and listing."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from timebill.errors import EngineError
from timebill.models.pagination import Page
from timebill.models.payment import (
    PaymentCalculation,
    PaymentCalculationRequest,
    PaymentCreate,
    PaymentFilters,
    PaymentMethod,
    PaymentRecord,
    PaymentSortOption,
    PaymentStatus,
)
from timebill.routers.auth import get_workspace, http_error
from timebill.services.workspace import Workspace

router = APIRouter(prefix="/payments", tags=["payments"])


class CancelRequest(BaseModel):
    """Request model for cancelling a payment."""

    reason: Optional[str] = None


class DisputeRequest(BaseModel):
    """Request model for disputing a payment."""

    reason: str


class ProcessorStatusRequest(BaseModel):
    """Status reported by the payment processor."""

    status: PaymentStatus
    payment_method: Optional[PaymentMethod] = None
    occurred_at: Optional[datetime] = None


@router.get("", response_model=Page[PaymentRecord])
async def list_payments(
    status_filter: Optional[list[PaymentStatus]] = Query(None, alias="status"),
    payment_method: Optional[list[PaymentMethod]] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    scope_id: Optional[list[str]] = Query(None),
    client_id: Optional[list[str]] = Query(None),
    min_amount_cents: Optional[int] = Query(None),
    max_amount_cents: Optional[int] = Query(None),
    q: Optional[str] = Query(None),
    sort_by: PaymentSortOption = Query(PaymentSortOption.PAYMENT_DATE),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=200),
    workspace: Workspace = Depends(get_workspace),
):
    """
    List payments for the authenticated actor.

    - Repeat status, payment_method, scope_id or client_id to match any of several values
    - q searches the notes, case-insensitively
    - Defaults: payment date descending, 20 per page
    """
    filters = PaymentFilters(
        statuses=status_filter,
        payment_methods=payment_method,
        date_from=date_from,
        date_to=date_to,
        scope_ids=scope_id,
        client_ids=client_id,
        min_amount_cents=min_amount_cents,
        max_amount_cents=max_amount_cents,
        search_query=q,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        per_page=per_page,
    )
    try:
        return await workspace.payments.list_payments(filters)
    except EngineError as e:
        raise http_error(e)


@router.post("", response_model=PaymentRecord, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payment_create: PaymentCreate,
    workspace: Workspace = Depends(get_workspace),
):
    """
    Create a pending payment over completed time entries.

    - Entries must be completed, in the payment's scope and period
    - An entry can only be part of one non-cancelled payment
    """
    try:
        return await workspace.payments.create_payment(payment_create)
    except EngineError as e:
        raise http_error(e)


@router.post("/calculate", response_model=PaymentCalculation)
async def calculate_payment(
    request: PaymentCalculationRequest,
    workspace: Workspace = Depends(get_workspace),
):
    """Preview the totals, tax and category split of a set of entries."""
    try:
        return await workspace.payments.calculate(request.time_entry_ids)
    except EngineError as e:
        raise http_error(e)


@router.get("/{payment_id}", response_model=PaymentRecord)
async def get_payment(
    payment_id: str,
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return await workspace.payments.get_payment(payment_id)
    except EngineError as e:
        raise http_error(e)


@router.post("/{payment_id}/validate", response_model=PaymentRecord)
async def validate_payment(
    payment_id: str,
    workspace: Workspace = Depends(get_workspace),
):
    try:
        return await workspace.payments.validate_payment(payment_id)
    except EngineError as e:
        raise http_error(e)


@router.post("/{payment_id}/cancel", response_model=PaymentRecord)
async def cancel_payment(
    payment_id: str,
    request: CancelRequest | None = None,
    workspace: Workspace = Depends(get_workspace),
):
    """Cancel a payment. Irreversible; paid payments cannot be cancelled."""
    try:
        return await workspace.payments.cancel_payment(payment_id, reason=request.reason if request else None)
    except EngineError as e:
        raise http_error(e)


@router.post("/{payment_id}/dispute", response_model=PaymentRecord)
async def dispute_payment(
    payment_id: str,
    request: DisputeRequest,
    workspace: Workspace = Depends(get_workspace),
):
    """Dispute a payment. A reason is required."""
    try:
        return await workspace.payments.dispute_payment(payment_id, request.reason)
    except EngineError as e:
        raise http_error(e)


@router.post("/{payment_id}/status", response_model=PaymentRecord)
async def record_processor_status(
    payment_id: str,
    request: ProcessorStatusRequest,
    workspace: Workspace = Depends(get_workspace),
):
    """
    Record a status reported by the payment processor.

    - Accepts processing, paid, failed and refunded
    """
    try:
        return await workspace.payments.record_processor_status(
            payment_id,
            request.status,
            method=request.payment_method,
            occurred_at=request.occurred_at,
        )
    except EngineError as e:
        raise http_error(e)
