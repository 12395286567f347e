import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic_core import to_jsonable_python

from checkout_core.domain.models import ChangeSource, OrderEventType, OrderHistoryEvent


logger = logging.getLogger(__name__)


class OrderHistoryRecorder:
    """Append-only audit trail for orders.

    Every method writes through the caller's unit of work so the event commits
    or rolls back together with the change it describes.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def record(
        self,
        uow,
        event_type: OrderEventType,
        order_id: str,
        previous_value: Optional[dict[str, Any]],
        new_value: Optional[dict[str, Any]],
        actor: Optional[str],
        source: ChangeSource,
        reason: Optional[str] = None,
    ) -> OrderHistoryEvent:
        event = OrderHistoryEvent(
            id=str(uuid.uuid4()),
            order_id=order_id,
            event_type=event_type,
            change_source=source,
            previous_value=to_jsonable_python(previous_value) if previous_value is not None else None,
            new_value=to_jsonable_python(new_value) if new_value is not None else None,
            changed_by=actor,
            change_reason=reason,
            created_at=self._clock(),
        )
        await uow.order_history.create(event)
        logger.info(f"Order {order_id}: {event_type.value} recorded ({source.value})")
        return event

    async def record_order_creation(self, uow, order, actor: Optional[str], source: ChangeSource):
        snapshot = order.model_dump(mode="json", exclude={"items"})
        return await self.record(
            uow, OrderEventType.ORDER_CREATED, order.id, None, snapshot, actor, source
        )

    async def record_status_change(
        self, uow, order_id: str, previous_status, new_status, actor: Optional[str],
        source: ChangeSource, reason: Optional[str] = None,
    ):
        return await self.record(
            uow,
            OrderEventType.STATUS_CHANGED,
            order_id,
            {"status": getattr(previous_status, "value", previous_status)},
            {"status": getattr(new_status, "value", new_status)},
            actor,
            source,
            reason,
        )

    async def record_payment_update(
        self, uow, order_id: str, previous: dict, new: dict, actor: Optional[str],
        source: ChangeSource, reason: Optional[str] = None,
    ):
        return await self.record(
            uow, OrderEventType.PAYMENT_UPDATED, order_id, previous, new, actor, source, reason
        )

    async def record_note(self, uow, order_id: str, note: str, actor: Optional[str], source: ChangeSource):
        return await self.record(
            uow, OrderEventType.NOTE_ADDED, order_id, None, {"note": note}, actor, source
        )

    async def list_for_order(self, uow, order_id: str, event_type=None, change_source=None):
        return await uow.order_history.list_for_order(
            order_id, event_type=event_type, change_source=change_source
        )
