"""Request bodies for the admin API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from recurship.models import Cadence


class ShippingIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    address: str = Field(min_length=1, max_length=500)
    email: str = ""
    phone: str = ""
    city: str = ""
    pincode: str = ""
    country: str = ""


class CartItemIn(BaseModel):
    plan_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=200)
    sku: str = Field(min_length=1, max_length=128)
    unit_price: int = Field(ge=0)
    quantity: int = Field(default=1, ge=1, le=1000)


class CreateSubscriptionsIn(BaseModel):
    customer_id: str = Field(min_length=1, max_length=128)
    cadence: Cadence = Cadence.MONTHLY
    shipping: ShippingIn
    cart: list[CartItemIn] = Field(min_length=1, max_length=50)
