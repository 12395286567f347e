import logging
from typing import Optional

from checkout_core.domain.models import (
    Order,
    OrderStatus,
    Requester,
    ReservationContext,
)
from checkout_core.domain.exceptions import InvalidState, OrderNotFound, Unauthorized
from checkout_core.application.inventory import InventoryLedger
from checkout_core.application.order_history import OrderHistoryRecorder


logger = logging.getLogger(__name__)


class CancelOrderUseCase:
    """Cancel an order and hand its reserved stock back."""

    def __init__(self, unit_of_work, ledger: InventoryLedger, history: OrderHistoryRecorder):
        self._uow = unit_of_work
        self._ledger = ledger
        self._history = history

    async def __call__(self, order_id: str, requester: Requester, reason: Optional[str] = None) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFound(f"Order {order_id} not found")
            if not requester.owns(order.owner):
                raise Unauthorized(f"Order {order_id} does not belong to the requester")
            if not order.can_be_cancelled():
                raise InvalidState(f"Order {order.order_number} is {order.status.value} and cannot be cancelled")

            for item in order.items:
                await self._ledger.release(
                    uow,
                    item.product_id,
                    item.quantity,
                    ReservationContext(
                        order_id=order.id,
                        owner_id=requester.owner_id,
                        reason=f"Order {order.order_number} cancelled",
                    ),
                )
            await uow.orders.update_status(order.id, OrderStatus.CANCELLED)
            await self._history.record_status_change(
                uow, order.id, order.status, OrderStatus.CANCELLED,
                requester.owner_id, requester.change_source, reason or "Order cancelled",
            )
            await uow.commit()

            logger.info(f"Order {order.order_number} cancelled by {requester.owner_type.value} {requester.owner_id}")
            return await uow.orders.get_by_id(order.id)
