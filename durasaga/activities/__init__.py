"""Reference payment and shipping activity implementations."""

from durasaga.activities.models import Order, Payment, Shipment
from durasaga.activities.payment import DEBIT_PAYMENT, REFUND_PAYMENT, PaymentActivities
from durasaga.activities.shipping import SHIP_ORDER, ShippingActivities, generate_tracking_number

__all__ = [
    "DEBIT_PAYMENT",
    "REFUND_PAYMENT",
    "SHIP_ORDER",
    "Order",
    "Payment",
    "PaymentActivities",
    "Shipment",
    "ShippingActivities",
    "generate_tracking_number",
]
