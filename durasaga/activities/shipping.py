"""
Shipping activity.

Shipping has no compensation: once dispatched, a shipment is the saga's
irreversible last forward step.
"""

from __future__ import annotations

import secrets
import string
from typing import Any

from durasaga.activities.models import Shipment
from durasaga.core.exceptions import NonRetryableActivityError, TransientActivityError
from durasaga.core.logger import get_logger
from durasaga.core.types import ActivityInfo

logger = get_logger(__name__)

SHIP_ORDER = "shipOrder"

DEFAULT_UNSHIPPABLE_PRODUCTS = frozenset({999})

_TRACKING_ALPHABET = string.ascii_uppercase + string.digits


def generate_tracking_number(length: int = 8) -> str:
    return "".join(secrets.choice(_TRACKING_ALPHABET) for _ in range(length))


class ShippingActivities:
    """
    In-memory shipping service.

    Args:
        unshippable_products: Product ids that can never be shipped
        transient_failures: Number of attempts that fail with a retryable
            carrier error before shipping succeeds
    """

    def __init__(
        self,
        unshippable_products: frozenset[int] | set[int] = DEFAULT_UNSHIPPABLE_PRODUCTS,
        transient_failures: int = 0,
    ):
        self.unshippable_products = frozenset(unshippable_products)
        self.shipments: dict[str, Shipment] = {}
        self._by_token: dict[str, str] = {}
        self._failures_left = transient_failures
        self.attempts = 0

    def handlers(self) -> dict[str, Any]:
        return {SHIP_ORDER: self.ship_order}

    async def ship_order(self, order: dict[str, Any], info: ActivityInfo) -> dict[str, Any]:
        self.attempts += 1

        existing = self._by_token.get(info.idempotency_token)
        if existing is not None:
            return self.shipments[existing].to_dict()

        if order.get("product_id") in self.unshippable_products:
            msg = f"Product {order.get('product_id')} cannot be shipped"
            raise NonRetryableActivityError(msg)

        if self._failures_left > 0:
            self._failures_left -= 1
            msg = "Carrier unavailable"
            raise TransientActivityError(msg)

        shipment = Shipment(
            id=f"S{len(self.shipments) + 1}",
            order_id=order["order_id"],
            tracking_number=generate_tracking_number(),
        )
        self.shipments[shipment.id] = shipment
        self._by_token[info.idempotency_token] = shipment.id
        logger.info(f"Order {shipment.order_id} shipped with tracking {shipment.tracking_number}")
        return shipment.to_dict()
