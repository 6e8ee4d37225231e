"""Admin API routes — subscription setup, ledger inspection, sweep trigger."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from recurship.api.auth import require_admin
from recurship.api.schemas import CreateSubscriptionsIn
from recurship.exceptions import GatewayError
from recurship.models import LineItem, ShippingAddress, Subscription, fulfillment_key

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin)])

# First charge is scheduled shortly after creation
_START_DELAY = timedelta(seconds=60)


@router.post("/subscriptions")
async def create_subscriptions(body: CreateSubscriptionsIn, request: Request):
    """Create one provider subscription per cart entry and store it."""
    services = request.app.state.services
    if services.payment is None:
        return JSONResponse({"error": "Payment gateway not configured"}, status_code=503)

    created = []
    for item in body.cart:
        try:
            subscription_id = await services.payment.create_recurring_charge(
                item.plan_id, body.customer_id, item.quantity
            )
        except GatewayError:
            logger.exception("Subscription creation failed for plan %s", item.plan_id)
            return JSONResponse(
                {"error": "Error creating subscriptions", "subscriptions": created},
                status_code=502,
            )
        await services.subscriptions.save_subscription(
            Subscription(
                subscription_id=subscription_id,
                customer_id=body.customer_id,
                plan_id=item.plan_id,
                cadence=body.cadence,
                start_at=datetime.now(timezone.utc) + _START_DELAY,
                items=[
                    LineItem(
                        name=item.name,
                        sku=item.sku,
                        unit_price=item.unit_price,
                        quantity=item.quantity,
                    )
                ],
                shipping=ShippingAddress(**body.shipping.model_dump()),
            )
        )
        created.append({"item_name": item.name, "subscription_id": subscription_id})

    return {"subscriptions": created}


@router.post("/subscriptions/{subscription_id}/cancel")
async def cancel_subscription(subscription_id: str, request: Request):
    """Deactivate a subscription. Later charges for it ship nothing."""
    services = request.app.state.services
    if not await services.subscriptions.set_active(subscription_id, False):
        return JSONResponse({"error": "Subscription not found"}, status_code=404)
    logger.info("Subscription %s cancelled", subscription_id)
    return {"subscription_id": subscription_id, "active": False}


@router.get("/fulfillments/{subscription_id}/{billing_cycle}")
async def get_fulfillment(subscription_id: str, billing_cycle: str, request: Request):
    """Ledger entry for one subscription cycle."""
    services = request.app.state.services
    entry = await services.ledger.get(fulfillment_key(subscription_id, billing_cycle))
    if entry is None:
        return JSONResponse({"error": "Fulfillment not found"}, status_code=404)
    return entry.to_dict()


@router.post("/admin/fulfillments/{subscription_id}/{billing_cycle}/reset")
async def reset_fulfillment(subscription_id: str, billing_cycle: str, request: Request):
    """Re-enable retries for a permanently failed fulfillment."""
    services = request.app.state.services
    key = fulfillment_key(subscription_id, billing_cycle)
    if not await services.ledger.reset(key):
        return JSONResponse({"error": "No failed fulfillment to reset"}, status_code=404)
    logger.info("Fulfillment %s reset for retry", key)
    return {"fulfillment_key": key, "reset": True}


@router.post("/admin/sweep")
async def run_sweep(request: Request):
    """Run the reconciliation sweep now and return its report."""
    report = await request.app.state.services.sweep.run()
    return report.to_dict()
