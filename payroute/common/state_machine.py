"""Payment status transitions enforced by the payment service."""

from payroute.common.errors import InvalidRequestError

# Held while a refund is in flight at the provider; at most one refund per payment gets here.
REFUND_PENDING = "refund_pending"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing", "requires_action", "requires_capture", "succeeded", "failed", "canceled"},
    "processing": {"succeeded", "failed", "canceled"},
    "requires_action": {"processing", "succeeded", "failed", "canceled"},
    "requires_capture": {"succeeded", "canceled"},
    "succeeded": {REFUND_PENDING},
    REFUND_PENDING: {"refunded", "succeeded"},
    "failed": set(),
    "canceled": set(),
    "refunded": set(),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidRequestError(f"Invalid transition: {current} -> {new}")
