"""Error taxonomy for the notification pipeline."""


class NotificationError(Exception):
    """Base class for pipeline errors."""


class ValidationError(NotificationError):
    """
    Malformed or missing request fields. Raised before any store write.

    Args:
        message: Human-readable summary
        errors: Field-level errors as [{"field": ..., "message": ...}]
    """

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class NotFoundError(NotificationError):
    """Unknown user, preferences or notification."""


class PolicyRejection(NotificationError):
    """The policy refused delivery outright (e.g. channel disabled)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DeliveryError(NotificationError):
    """A channel adapter failed to deliver."""


class TransientDeliveryError(DeliveryError):
    """Timeout or 5xx-equivalent failure; safe to retry."""


class PermanentDeliveryError(DeliveryError):
    """The transport rejected the message (e.g. invalid address); never retried."""


class InfrastructureError(NotificationError):
    """Store or message bus unavailable."""


class InvalidTransitionError(NotificationError):
    def __init__(self, current, target):
        super().__init__(f"Cannot transition notification from {current} to {target}")
        self.current = current
        self.target = target
