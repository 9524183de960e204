"""Payment status state machine."""
from timebill.errors import ConflictError
from timebill.models.payment import PaymentStatus

S = PaymentStatus

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    S.PENDING: frozenset({S.VALIDATED, S.CANCELLED, S.DISPUTED}),
    S.VALIDATED: frozenset({S.PROCESSING, S.CANCELLED, S.DISPUTED}),
    S.PROCESSING: frozenset({S.PAID, S.FAILED, S.CANCELLED, S.DISPUTED}),
    S.FAILED: frozenset({S.PROCESSING, S.CANCELLED, S.DISPUTED}),
    S.DISPUTED: frozenset({S.VALIDATED, S.CANCELLED}),
    S.PAID: frozenset({S.REFUNDED, S.DISPUTED}),
    S.REFUNDED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Statuses only the payment processor reports
PROCESSOR_STATUSES = frozenset({S.PROCESSING, S.PAID, S.FAILED, S.REFUNDED})


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """
    Whether ``current -> target`` is a legal payment status change.

    Examples:
        >>> can_transition(PaymentStatus.PENDING, PaymentStatus.VALIDATED)
        True
        >>> can_transition(PaymentStatus.PAID, PaymentStatus.PENDING)
        False
    """
    return PaymentStatus(target) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def check_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """
    Reject an illegal status change.

    Raises:
        ConflictError: If ``current -> target`` is not allowed
    """
    if not can_transition(current, target):
        raise ConflictError(
            f"Cannot move payment from {PaymentStatus(current).value} to {PaymentStatus(target).value}",
            code="INVALID_STATUS_TRANSITION",
        )
