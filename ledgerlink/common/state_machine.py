"""Payment status transitions enforced by the payment reconciler."""

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "created": {"authorized", "captured", "failed"},
    "authorized": {"captured", "failed"},
    # A late success for an attempt already recorded as failed is accepted.
    "failed": {"authorized", "captured"},
    "captured": set(),
}

TERMINAL_STATES = {"captured", "failed"}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine.

    Re-applying the current status is a no-op and always allowed.
    """

    if current == new:
        return
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
