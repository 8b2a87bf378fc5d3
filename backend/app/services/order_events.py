"""In-process order events."""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from app.models.order import OrderStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderStatusChanged:
    """Emitted after a status change is committed.

    ``old_status`` is None for a freshly placed order.
    """
    order_id: int
    restaurant_id: int
    old_status: Optional[OrderStatus]
    new_status: OrderStatus


OrderListener = Callable[[OrderStatusChanged], None]


class OrderEvents:
    """Synchronous fan-out of order events to subscribed listeners.

    The change is already committed when listeners run, so a failing
    listener is logged and the remaining listeners still run.
    """

    def __init__(self):
        self._listeners: List[OrderListener] = []

    def subscribe(self, listener: OrderListener) -> None:
        self._listeners.append(listener)

    def publish(self, event: OrderStatusChanged) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    f"Order listener {getattr(listener, '__qualname__', listener)} failed "
                    f"for order {event.order_id} ({event.new_status.value})"
                )
