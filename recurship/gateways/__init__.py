"""Provider capability interfaces and adapters."""

from recurship.gateways.base import PaymentGateway, PaymentWebhookSource, ShippingGateway

__all__ = ["PaymentGateway", "PaymentWebhookSource", "ShippingGateway"]
