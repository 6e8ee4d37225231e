"""Error taxonomy for ingestion, dispatch and storage.

Classifications that are not failures (unsupported event types, duplicate
deliveries, a lost ledger claim race) are still modelled as exceptions so the
layer that detects them can unwind cleanly; callers convert them to result
values at the component boundary.
"""

from __future__ import annotations


class RecurshipError(Exception):
    """Base class for all recurship errors."""


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class MalformedEvent(RecurshipError):
    """Raw event is missing a required field or has the wrong type."""


class UnsupportedEvent(RecurshipError):
    """Event type is valid but not one we act on. Not an error."""

    def __init__(self, event_type: str) -> None:
        super().__init__(f"Unsupported event type: {event_type}")
        self.event_type = event_type


# ---------------------------------------------------------------------------
# Dispatch policy
# ---------------------------------------------------------------------------


class UnknownSubscription(RecurshipError):
    """No subscription record exists for the given id."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"Unknown subscription: {subscription_id}")
        self.subscription_id = subscription_id


class InactiveSubscription(RecurshipError):
    """Subscription is cancelled or paused; no shipment is owed."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"Inactive subscription: {subscription_id}")
        self.subscription_id = subscription_id


class LedgerConflict(RecurshipError):
    """Another worker holds the claim for this fulfillment key."""

    def __init__(self, fulfillment_key: str) -> None:
        super().__init__(f"Fulfillment key already claimed: {fulfillment_key}")
        self.fulfillment_key = fulfillment_key


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------


class GatewayError(RecurshipError):
    """A provider gateway call failed."""


class TransientGatewayFailure(GatewayError):
    """Retryable failure: timeout, connection error, 429 or 5xx.

    ``retry_after`` carries a provider-supplied delay hint in seconds.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PermanentGatewayFailure(GatewayError):
    """Request was rejected and must not be retried automatically."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StoreUnavailable(RecurshipError):
    """Backing store could not be reached within the I/O timeout."""
