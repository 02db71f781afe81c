"""Exception hierarchy for subscription reconciliation.

Routers translate these into HTTP status codes; the webhook dispatcher logs
and acknowledges them so Stripe does not redeliver application failures.
"""

from datetime import datetime


class PaygateError(Exception):
    """Base class for all service errors."""


class SubscriptionError(PaygateError):
    """A user action could not be applied to the subscription."""


class SubscriptionValidationError(SubscriptionError):
    """Malformed input (unknown plan, missing identifiers). No state change."""


class SubscriptionNotFoundError(SubscriptionError):
    """No subscription in the state the operation requires."""


class SubscriptionConflictError(SubscriptionError):
    """The subscription exists but is already in (or past) the requested state."""

    def __init__(self, message: str, end_date: datetime | None = None) -> None:
        super().__init__(message)
        self.end_date = end_date


class GatewayError(PaygateError):
    """A Stripe call failed in a way the operation cannot recover from."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class PersistenceError(PaygateError):
    """A database write failed. Always fatal to the operation."""


class WebhookPayloadError(PaygateError):
    """A verified webhook event is missing data its handler needs."""
