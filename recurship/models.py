"""Domain models: subscriptions, charge events, fulfillment orders, ledger.

Billing cycle markers are calendar labels computed in UTC:
- monthly: ``YYYY-MM`` (``2024-06``)
- weekly:  ISO week ``YYYY-Www`` (``2024-W23``)

The fulfillment key is ``{subscription_id}:{marker}``. It is the only
idempotency key sent to the shipping gateway, so it must never contain a
timestamp or random component.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


class Cadence(str, Enum):
    """How often a subscription is charged and shipped."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class LedgerStatus(str, Enum):
    """Fulfillment ledger states. CREATED is terminal."""
    PENDING = "pending"
    CREATED = "created"
    FAILED = "failed"


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class DispatchStatus(str, Enum):
    CREATED = "created"
    ALREADY_FULFILLED = "already_fulfilled"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Cycle helpers
# ---------------------------------------------------------------------------


def _utc(at: datetime) -> datetime:
    if at.tzinfo is None:
        return at.replace(tzinfo=timezone.utc)
    return at.astimezone(timezone.utc)


def billing_cycle_marker(cadence: Cadence, at: datetime) -> str:
    """Return the billing cycle label that contains ``at``."""
    at = _utc(at)
    if cadence == Cadence.MONTHLY:
        return f"{at.year:04d}-{at.month:02d}"
    iso_year, iso_week, _ = at.isocalendar()
    return f"{iso_year:04d}-W{iso_week:02d}"


def cycle_bounds(cadence: Cadence, at: datetime) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` window of the cycle containing ``at``."""
    at = _utc(at)
    if cadence == Cadence.MONTHLY:
        start = at.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end
    midnight = at.replace(hour=0, minute=0, second=0, microsecond=0)
    start = midnight - timedelta(days=at.weekday())
    return start, start + timedelta(days=7)


def fulfillment_key(subscription_id: str, billing_cycle: str) -> str:
    """Deterministic idempotency key for one subscription cycle."""
    return f"{subscription_id}:{billing_cycle}"


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------


@dataclass
class LineItem:
    """One product line on a subscription. Prices are integer minor units."""
    name: str
    sku: str
    unit_price: int
    quantity: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "sku": self.sku,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LineItem:
        return cls(
            name=str(data["name"]),
            sku=str(data["sku"]),
            unit_price=int(data["unit_price"]),
            quantity=int(data.get("quantity", 1)),
        )


@dataclass
class ShippingAddress:
    """Customer shipping details used for every order of a subscription."""
    name: str
    address: str
    email: str = ""
    phone: str = ""
    city: str = ""
    pincode: str = ""
    country: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "email": self.email,
            "phone": self.phone,
            "city": self.city,
            "pincode": self.pincode,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShippingAddress:
        return cls(
            name=str(data.get("name", "")),
            address=str(data.get("address", "")),
            email=str(data.get("email", "")),
            phone=str(data.get("phone", "")),
            city=str(data.get("city", "")),
            pincode=str(data.get("pincode", "")),
            country=str(data.get("country", "")),
        )


@dataclass
class Subscription:
    """A customer's recurring plan and the items shipped each cycle."""
    subscription_id: str
    customer_id: str
    plan_id: str = ""
    active: bool = True
    cadence: Cadence = Cadence.MONTHLY
    start_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    items: list[LineItem] = field(default_factory=list)
    shipping: ShippingAddress = field(
        default_factory=lambda: ShippingAddress(name="", address="")
    )
    last_charged_cycle: str | None = None

    def cycle_at(self, at: datetime) -> str:
        return billing_cycle_marker(self.cadence, at)

    def has_started(self, at: datetime) -> bool:
        return _utc(self.start_at) <= _utc(at)


# ---------------------------------------------------------------------------
# Charge events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChargeEvent:
    """One successful recurring charge reported by the payment provider.

    ``charge_id`` is the deduplication key: two events with the same id are
    the same real-world charge no matter how often it is delivered.
    """
    subscription_id: str
    charge_id: str
    observed_at: datetime
    customer_id: str | None = None
    event_type: str = ""


# ---------------------------------------------------------------------------
# Fulfillment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderItem:
    name: str
    sku: str
    units: int
    unit_price: int


@dataclass(frozen=True)
class FulfillmentOrder:
    """Provider-agnostic shipment request for one billing cycle."""
    fulfillment_key: str
    subscription_id: str
    billing_cycle: str
    shipping: ShippingAddress
    items: tuple[OrderItem, ...]
    ordered_at: datetime

    @property
    def total(self) -> int:
        return sum(item.unit_price * item.units for item in self.items)

    @classmethod
    def for_cycle(
        cls,
        subscription: Subscription,
        billing_cycle: str,
        ordered_at: datetime | None = None,
    ) -> FulfillmentOrder:
        """Snapshot the subscription's current items for ``billing_cycle``."""
        return cls(
            fulfillment_key=fulfillment_key(subscription.subscription_id, billing_cycle),
            subscription_id=subscription.subscription_id,
            billing_cycle=billing_cycle,
            shipping=subscription.shipping,
            items=tuple(
                OrderItem(
                    name=item.name,
                    sku=item.sku,
                    units=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in subscription.items
            ),
            ordered_at=ordered_at or datetime.now(timezone.utc),
        )


@dataclass
class LedgerEntry:
    """Fulfillment ledger row keyed by fulfillment key."""
    fulfillment_key: str
    subscription_id: str
    billing_cycle: str
    status: LedgerStatus = LedgerStatus.PENDING
    gateway_order_id: str | None = None
    failure_reason: str | None = None
    retryable: bool = True
    attempts: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "fulfillment_key": self.fulfillment_key,
            "subscription_id": self.subscription_id,
            "billing_cycle": self.billing_cycle,
            "status": self.status.value,
            "gateway_order_id": self.gateway_order_id,
            "failure_reason": self.failure_reason,
            "retryable": self.retryable,
            "attempts": self.attempts,
            "updated_at": self.updated_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class DispatchResult:
    status: DispatchStatus
    fulfillment_key: str = ""
    gateway_order_id: str | None = None
    reason: str | None = None
    attempts: int = 0


@dataclass
class IngestResult:
    """Classification returned to the webhook caller.

    ``dispatch`` is the background task driving fulfillment for an accepted
    event. Awaiting it yields the ``DispatchResult``.
    """
    status: IngestStatus
    reason: str | None = None
    event: ChargeEvent | None = None
    dispatch: asyncio.Task | None = None
