"""Shiprocket adapter — ShippingGateway over the adhoc order API.

The fulfillment key is sent as ``order_id`` (the channel order reference),
so every retry for one billing cycle carries the same reference. Prices are
stored in minor units and sent to Shiprocket in major units.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from recurship.exceptions import PermanentGatewayFailure
from recurship.gateways.http import send
from recurship.models import FulfillmentOrder

logger = logging.getLogger(__name__)

_CREATE_ORDER_PATH = "/orders/create/adhoc"


class ShiprocketGateway:
    """ShippingGateway backed by Shiprocket (bearer token)."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://apiv2.shiprocket.in/v1/external",
        timeout: float = 10.0,
        pickup_location: str = "Primary Pickup Location",
        default_city: str = "",
        default_pincode: str = "",
        default_country: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._pickup_location = pickup_location
        self._defaults = {
            "city": default_city,
            "pincode": default_pincode,
            "country": default_country,
        }
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    def build_payload(self, order: FulfillmentOrder) -> dict[str, Any]:
        shipping = order.shipping
        return {
            "order_id": order.fulfillment_key,
            "order_date": order.ordered_at.strftime("%Y-%m-%d %H:%M"),
            "pickup_location": self._pickup_location,
            "billing_customer_name": shipping.name,
            "billing_last_name": "",
            "billing_address": shipping.address,
            "billing_city": shipping.city or self._defaults["city"],
            "billing_pincode": shipping.pincode or self._defaults["pincode"],
            "billing_state": "",
            "billing_country": shipping.country or self._defaults["country"],
            "billing_email": shipping.email,
            "billing_phone": shipping.phone,
            "shipping_is_billing": True,
            "order_items": [
                {
                    "name": item.name,
                    "sku": item.sku,
                    "units": item.units,
                    "selling_price": item.unit_price / 100,
                }
                for item in order.items
            ],
            "payment_method": "Prepaid",
            "sub_total": order.total / 100,
        }

    async def create_order(self, order: FulfillmentOrder) -> str:
        if not order.items:
            raise PermanentGatewayFailure(f"Order {order.fulfillment_key} has no items")
        data = await send(
            self._client,
            "shiprocket",
            "POST",
            _CREATE_ORDER_PATH,
            json=self.build_payload(order),
        )
        gateway_order_id = data.get("order_id")
        if gateway_order_id is None:
            raise PermanentGatewayFailure(
                f"Shiprocket response missing order_id for {order.fulfillment_key}"
            )
        logger.info(
            "Shiprocket order created: key=%s order_id=%s",
            order.fulfillment_key,
            gateway_order_id,
        )
        return str(gateway_order_id)

    async def aclose(self) -> None:
        await self._client.aclose()
