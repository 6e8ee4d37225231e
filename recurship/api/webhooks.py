"""Webhook HTTP handlers — FastAPI route handlers for payment webhooks.

Each handler:
1. Reads raw body (needed for HMAC verification)
2. Verifies the provider signature
3. Maps the provider envelope to a raw charge event
4. Ingests it (classify + dedup) and schedules fulfillment in the background
5. Returns before the shipping gateway is contacted

Response contract:
- 200 for accepted AND duplicate (provider must not retry either)
- 400 for invalid JSON, malformed or unsupported events
- 401 only for signature failures
- 503 when the dedup record could not be written (provider retries)
- Never return internal error details to the webhook caller
"""

from __future__ import annotations

import json
import logging
import time

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from recurship.api.auth import require_admin
from recurship.exceptions import StoreUnavailable
from recurship.gateways.base import PaymentWebhookSource
from recurship.models import IngestStatus

logger = logging.getLogger(__name__)


def _log_webhook(
    request: Request, provider: str, event_type: str, charge_id: str, status: str
) -> None:
    """Audit log for webhook activity."""
    counts = request.app.state.services.webhook_counts
    counts[status] = counts.get(status, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT provider=%s event=%s charge=%s status=%s count=%d",
        provider,
        event_type,
        charge_id,
        status,
        counts[status],
    )


async def _handle_webhook(request: Request, source: PaymentWebhookSource) -> JSONResponse:
    """Generic webhook handler for one payment provider."""
    start = time.time()
    services = request.app.state.services
    provider = source.name

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    # 1. Verify signature
    if not source.verify(body, headers):
        _log_webhook(request, provider, "unknown", "-", "signature_failed")
        return JSONResponse({"status": "unauthorized"}, status_code=401)

    # 2. Parse JSON payload
    try:
        envelope = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        _log_webhook(request, provider, "unknown", "-", "invalid_json")
        return JSONResponse({"status": "rejected", "reason": "invalid_json"}, status_code=400)
    if not isinstance(envelope, dict):
        _log_webhook(request, provider, "unknown", "-", "invalid_json")
        return JSONResponse({"status": "rejected", "reason": "invalid_json"}, status_code=400)

    # 3. Normalize provider envelope
    raw = source.parse(envelope)
    event_type = str(raw.get("event_type", "unknown"))
    charge_id = str(raw.get("charge_id", "-"))

    # 4. Ingest (dedup + background dispatch)
    try:
        result = await services.ingestor.ingest(raw)
    except StoreUnavailable:
        logger.exception("Charge log unavailable for %s/%s", provider, charge_id)
        _log_webhook(request, provider, event_type, charge_id, "store_unavailable")
        return JSONResponse({"status": "unavailable"}, status_code=503)

    _log_webhook(request, provider, event_type, charge_id, result.reason or result.status.value)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: %s/%s", elapsed_ms, provider, event_type)

    if result.status == IngestStatus.REJECTED:
        return JSONResponse({"status": "rejected", "reason": result.reason}, status_code=400)
    return JSONResponse({"status": result.status.value}, status_code=200)


def register_webhook_routes(app: FastAPI) -> None:
    """Register webhook endpoint routes on the FastAPI app."""

    @app.post("/webhooks/razorpay")
    async def razorpay_webhook(request: Request):
        """Receive Razorpay webhooks (signature-verified)."""
        return await _handle_webhook(request, request.app.state.services.webhook_source)

    @app.get("/webhooks/status", dependencies=[Depends(require_admin)])
    async def webhook_status(request: Request):
        """Webhook outcome counts and in-flight dispatches (admin only)."""
        services = request.app.state.services
        return {
            "counts": dict(services.webhook_counts),
            "in_flight": services.runner.in_flight,
        }

    logger.info("Webhook routes registered: /webhooks/razorpay")
