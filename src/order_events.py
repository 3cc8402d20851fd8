"""Typed order update events decoded from the account WebSocket."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional


class OrderSide(str, Enum):
    BID = "Bid"
    ASK = "Ask"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.ASK if self is OrderSide.BID else OrderSide.BID

    @classmethod
    def parse(cls, raw: Any) -> Optional["OrderSide"]:
        for side in cls:
            if raw == side.value:
                return side
        return None


class OrderEventType(str, Enum):
    ORDER_ACCEPTED = "orderAccepted"
    ORDER_CANCELLED = "orderCancelled"
    ORDER_EXPIRED = "orderExpired"
    ORDER_FILL = "orderFill"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: Any) -> "OrderEventType":
        for kind in cls:
            if kind is not cls.UNRECOGNIZED and raw == kind.value:
                return kind
        return cls.UNRECOGNIZED


# Event tags delivered to the consumer callback.
ORDER_EVENT_TYPES = frozenset(
    kind.value for kind in OrderEventType if kind is not OrderEventType.UNRECOGNIZED
)


def _as_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(str(raw))
    except ValueError:
        return None


def _as_decimal(raw: Any) -> Optional[Decimal]:
    if raw is None:
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return None


@dataclass(frozen=True)
class OrderUpdateEvent:
    """One ``account.orderUpdate`` payload.

    Only ``kind``, ``client_id`` and ``side`` matter to the grid; the other
    fields are kept for logging.
    """

    kind: OrderEventType
    client_id: Optional[int] = None
    side: Optional[OrderSide] = None
    symbol: Optional[str] = None
    order_id: Optional[str] = None
    price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "OrderUpdateEvent":
        order_id = data.get("i")
        return cls(
            kind=OrderEventType.parse(data.get("e")),
            client_id=_as_int(data.get("c")),
            side=OrderSide.parse(data.get("S")),
            symbol=data.get("s"),
            order_id=str(order_id) if order_id is not None else None,
            price=_as_decimal(data.get("p")),
            quantity=_as_decimal(data.get("q")),
            raw=dict(data),
        )
