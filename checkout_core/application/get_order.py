from checkout_core.domain.models import Order, Requester
from checkout_core.domain.exceptions import OrderNotFound, Unauthorized


class GetOrderUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, order_id: str, requester: Requester) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFound(f"Order {order_id} not found")
            if not requester.owns(order.owner):
                # same answer as a missing order, so ids can't be guessed
                raise OrderNotFound(f"Order {order_id} not found")
            return order


class GetOrderHistoryUseCase:
    def __init__(self, unit_of_work, history):
        self._uow = unit_of_work
        self._history = history

    async def __call__(self, order_id: str, requester: Requester, event_type=None, change_source=None):
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFound(f"Order {order_id} not found")
            if not requester.owns(order.owner):
                raise Unauthorized(f"Order {order_id} does not belong to the requester")
            return await self._history.list_for_order(
                uow, order_id, event_type=event_type, change_source=change_source
            )
