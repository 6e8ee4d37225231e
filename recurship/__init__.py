"""recurship — recurring-charge to shipment reconciliation.

Turns successful subscription charges reported by the payment provider into
exactly one shipment order per billing cycle at the fulfillment provider.
"""

__version__ = "0.3.0"
