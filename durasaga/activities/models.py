"""
Domain records of the order, payment and shipping contexts.

These belong to the activity side; the engine only ever sees them as
activity input and output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass
class Order:
    id: int
    product_id: int
    price: float
    quantity: int
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_input(self) -> dict[str, Any]:
        """Workflow input for this order."""
        return {
            "order_id": self.id,
            "product_id": self.product_id,
            "price": self.price,
            "quantity": self.quantity,
        }


@dataclass
class Payment:
    id: str
    order_id: int
    amount: float
    external_id: str
    refunded: bool = False
    refund_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount": self.amount,
            "external_id": self.external_id,
            "refunded": self.refunded,
            "refund_id": self.refund_id,
        }


@dataclass
class Shipment:
    id: str
    order_id: int
    tracking_number: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "order_id": self.order_id, "tracking_number": self.tracking_number}
