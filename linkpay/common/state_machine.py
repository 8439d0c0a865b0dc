"""Payment link state machine transitions enforced by the link store."""

from linkpay.common.errors import StateConflictError

PENDING = "pending"
PAID = "paid"
EXPIRED = "expired"
CANCELLED = "cancelled"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PAID, EXPIRED, CANCELLED},
    PAID: set(),
    EXPIRED: set(),
    CANCELLED: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Webhook event emitted when a link reaches each terminal state.
TRANSITION_EVENTS: dict[str, str] = {
    PAID: "payment.completed",
    EXPIRED: "payment.expired",
    CANCELLED: "payment.cancelled",
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise StateConflictError(f"Invalid transition: {current} -> {new}", current_status=current)
