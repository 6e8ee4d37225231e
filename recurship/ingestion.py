"""Event ingestion — classify, normalize and deduplicate charge events.

Contract:
- Only the recurring-charge-succeeded event type is acted upon. Other
  types are rejected as ``unsupported_event`` with no side effects
- Missing event type, subscription id or charge id -> ``malformed_event``
- The provider charge id is the dedup key. A redelivered charge returns
  ``duplicate`` and triggers nothing
- Accepted events are handed to the dispatch runner; ingest() returns
  before fulfillment finishes
- The dedup record is never rolled back by a fulfillment failure
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from recurship.exceptions import MalformedEvent, StoreUnavailable, UnsupportedEvent
from recurship.models import ChargeEvent, IngestResult, IngestStatus
from recurship.store.base import ChargeEventLog

logger = logging.getLogger(__name__)

DEFAULT_CHARGE_EVENT_TYPE = "subscription.charged"

# Maximum id length to keep junk out of keys and logs
_MAX_ID_LENGTH = 128


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_id(raw: Mapping[str, Any], field: str) -> str:
    value = raw.get(field)
    if not isinstance(value, str) or not value.strip():
        raise MalformedEvent(f"missing or invalid {field}")
    value = value.strip()
    if len(value) > _MAX_ID_LENGTH:
        raise MalformedEvent(f"{field} too long")
    return value


def parse_timestamp(value: Any) -> datetime:
    """Accept epoch seconds, ISO-8601 strings or datetimes. Returns UTC."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise MalformedEvent("invalid observed_at")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (ValueError, OverflowError, OSError) as e:
            raise MalformedEvent("invalid observed_at") from e
    if isinstance(value, str):
        text = value.strip()
        try:
            return datetime.fromtimestamp(float(text), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedEvent("invalid observed_at") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedEvent("invalid observed_at")


class EventIngestor:
    """Turns raw provider-agnostic events into accepted charge events."""

    def __init__(
        self,
        charge_log: ChargeEventLog,
        submit: Callable[[ChargeEvent], asyncio.Task],
        *,
        charge_event_type: str = DEFAULT_CHARGE_EVENT_TYPE,
        io_timeout: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._charge_log = charge_log
        self._submit = submit
        self._charge_event_type = charge_event_type
        self._io_timeout = io_timeout
        self._clock = clock

    def normalize(self, raw: Mapping[str, Any]) -> ChargeEvent:
        """Build a ChargeEvent.

        Raises:
            MalformedEvent: event type or a required id is missing
            UnsupportedEvent: event type is not the charge-succeeded type
        """
        event_type = raw.get("event_type")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedEvent("missing event_type")
        if event_type != self._charge_event_type:
            raise UnsupportedEvent(event_type)

        subscription_id = _require_id(raw, "subscription_id")
        charge_id = _require_id(raw, "charge_id")

        customer_id = raw.get("customer_id")
        if customer_id is not None and not isinstance(customer_id, str):
            customer_id = str(customer_id)

        observed = raw.get("observed_at")
        observed_at = parse_timestamp(observed) if observed is not None else self._clock()

        return ChargeEvent(
            subscription_id=subscription_id,
            charge_id=charge_id,
            customer_id=customer_id or None,
            observed_at=observed_at,
            event_type=event_type,
        )

    async def ingest(self, raw: Mapping[str, Any]) -> IngestResult:
        """Classify one raw event as accepted, duplicate or rejected.

        Raises ``StoreUnavailable`` if the dedup record cannot be written
        (timeout or store error); the caller must then let the provider redeliver.
        """
        try:
            event = self.normalize(raw)
        except UnsupportedEvent as e:
            logger.info("Ignoring unsupported event type: %s", e.event_type)
            return IngestResult(status=IngestStatus.REJECTED, reason="unsupported_event")
        except MalformedEvent as e:
            logger.warning("Malformed charge event: %s", e)
            return IngestResult(status=IngestStatus.REJECTED, reason="malformed_event")

        try:
            is_new = await asyncio.wait_for(
                self._charge_log.record(event), timeout=self._io_timeout
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailable("charge log write timed out") from e
        except StoreUnavailable:
            raise
        except Exception as e:
            # Driver and connection errors: the provider must redeliver
            raise StoreUnavailable(f"charge log write failed: {type(e).__name__}") from e

        if not is_new:
            logger.info(
                "Duplicate charge event %s for %s — skipping",
                event.charge_id,
                event.subscription_id,
            )
            return IngestResult(status=IngestStatus.DUPLICATE, event=event)

        task = self._submit(event)
        logger.info(
            "Accepted charge %s for subscription %s",
            event.charge_id,
            event.subscription_id,
        )
        return IngestResult(status=IngestStatus.ACCEPTED, event=event, dispatch=task)
