"""
Payment state machine - enforces valid lifecycle transitions.

Payment lifecycle:
    PENDING -> PROCESSING -> COMPLETED | FAILED
    COMPLETED -> REFUNDED                       (external refund flow)
    FAILED -> PROCESSING                        (retry with a fresh attempt key)
    FAILED -> COMPLETED                         (reconciliation found the transfer)
    PENDING | PROCESSING | COMPLETED | FAILED -> DISPUTED
    DISPUTED -> REFUNDED | COMPLETED | DISPUTE_RESOLVED

PENDING -> PENDING is allowed: it annotates a payment that could not be
dispatched yet (no payout method, missing details) without failing it.
FAILED -> FAILED lets reconciliation settle the outcome of a failed attempt.
"""

from typing import Dict, List, Set

from database.models import PaymentStatus


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed from the current state."""

    def __init__(self, current: PaymentStatus, target: PaymentStatus):
        self.current = current
        self.target = target
        allowed = ", ".join(sorted(s.value for s in allowed_targets(current))) or "none"
        super().__init__(
            f"Invalid payment transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: [{allowed}]"
        )


_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        PaymentStatus.DISPUTED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.DISPUTED,
    },
    PaymentStatus.COMPLETED: {
        PaymentStatus.REFUNDED,
        PaymentStatus.DISPUTED,
    },
    PaymentStatus.FAILED: {
        PaymentStatus.FAILED,
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.DISPUTED,
    },
    PaymentStatus.DISPUTED: {
        PaymentStatus.REFUNDED,
        PaymentStatus.COMPLETED,
        PaymentStatus.DISPUTE_RESOLVED,
    },
    # Terminal
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.DISPUTE_RESOLVED: set(),
}

TERMINAL_STATES = frozenset(s for s, targets in _TRANSITIONS.items() if not targets)


def allowed_targets(current: PaymentStatus) -> Set[PaymentStatus]:
    return set(_TRANSITIONS.get(PaymentStatus(current), set()))


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return PaymentStatus(target) in allowed_targets(current)


def validate_transition(current: PaymentStatus, target: PaymentStatus) -> List[str]:
    """Check if a transition is valid. Returns errors (empty = OK)."""
    if can_transition(current, target):
        return []
    return [str(InvalidTransitionError(PaymentStatus(current), PaymentStatus(target)))]


def ensure_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(PaymentStatus(current), PaymentStatus(target))
