import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from checkout_core.domain.exceptions import (
    InsufficientStock,
    InvalidState,
    InventoryNotFound,
    ValidationFailed,
)
from checkout_core.domain.models import (
    InventoryAction,
    InventoryHistoryEntry,
    InventoryRecord,
    InventorySource,
    ReservationContext,
)


logger = logging.getLogger(__name__)


class InventoryLedger:
    """Reserve/release/complete/adjust stock, appending a history row for every change.

    All methods run inside the caller's unit of work; they never commit.
    """

    def __init__(self, low_stock_threshold: int = 10, clock: Optional[Callable[[], datetime]] = None):
        self._low_stock_threshold = low_stock_threshold
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def initialize(
        self, uow, product_id: str, quantity: int = 0, changed_by: Optional[str] = None,
        low_stock_threshold: Optional[int] = None,
    ) -> InventoryRecord:
        if quantity < 0:
            raise ValidationFailed(["Initial quantity cannot be negative"])
        if await uow.inventory.get_by_product(product_id):
            raise InvalidState(f"Inventory record already exists for product {product_id}")

        threshold = self._low_stock_threshold if low_stock_threshold is None else low_stock_threshold
        record = InventoryRecord(
            id=str(uuid.uuid4()),
            product_id=product_id,
            quantity=quantity,
            reserved=0,
            available=quantity,
            low_stock_threshold=threshold,
            is_low_stock=quantity <= threshold,
            updated_at=self._clock(),
        )
        await uow.inventory.create(record)
        if quantity > 0:
            await self._append(
                uow, product_id, InventoryAction.INITIALIZE,
                quantity_before=0, quantity_after=quantity,
                reserved_before=0, reserved_after=0,
                reason="Initial inventory setup", source=InventorySource.SYSTEM,
                changed_by=changed_by,
            )
        logger.info(f"Inventory initialised for {product_id}: {quantity}")
        return record

    async def reserve(self, uow, product_id: str, quantity: int, context: ReservationContext) -> InventoryRecord:
        if quantity < 1:
            raise ValidationFailed([f"Reservation quantity must be at least 1, got {quantity}"])

        # guarded decrement: the WHERE clause is the stock check
        if not await uow.inventory.try_reserve(product_id, quantity):
            current = await uow.inventory.get_by_product(product_id)
            if current is None:
                raise InventoryNotFound(f"Inventory record not found for product {product_id}")
            raise InsufficientStock(product_id, current.available, quantity)

        after = await uow.inventory.get_by_product(product_id)
        await self._append(
            uow, product_id, InventoryAction.RESERVE,
            quantity_before=after.quantity, quantity_after=after.quantity,
            reserved_before=after.reserved - quantity, reserved_after=after.reserved,
            reason=context.reason or f"Stock reserved for order {context.order_id}",
            source=context.source, order_id=context.order_id, changed_by=context.owner_id,
        )
        logger.info(f"Reserved {quantity} of {product_id} for order {context.order_id}")
        return after

    async def release(self, uow, product_id: str, quantity: int, context: ReservationContext) -> InventoryRecord:
        if quantity < 1:
            raise ValidationFailed([f"Release quantity must be at least 1, got {quantity}"])

        record = await uow.inventory.get_by_product(product_id, for_update=True)
        if record is None:
            raise InventoryNotFound(f"Inventory record not found for product {product_id}")

        new_reserved = max(0, record.reserved - quantity)
        if new_reserved != record.reserved - quantity:
            logger.warning(
                f"Release of {quantity} on {product_id} exceeds reserved {record.reserved}; clamped to 0"
            )
        await uow.inventory.update_counters(
            product_id, record.quantity, new_reserved, record.quantity <= record.low_stock_threshold
        )
        await self._append(
            uow, product_id, InventoryAction.RELEASE,
            quantity_before=record.quantity, quantity_after=record.quantity,
            reserved_before=record.reserved, reserved_after=new_reserved,
            reason=context.reason or f"Reservation released for order {context.order_id}",
            source=context.source, order_id=context.order_id, changed_by=context.owner_id,
        )
        logger.info(f"Released {record.reserved - new_reserved} of {product_id} (order {context.order_id})")
        return await uow.inventory.get_by_product(product_id)

    async def complete(self, uow, product_id: str, quantity: int, context: ReservationContext) -> InventoryRecord:
        """Turn reserved units into a sale: on-hand and reserved both drop by `quantity`."""
        if quantity < 1:
            raise ValidationFailed([f"Completion quantity must be at least 1, got {quantity}"])

        before = await uow.inventory.get_by_product(product_id, for_update=True)
        if before is None:
            raise InventoryNotFound(f"Inventory record not found for product {product_id}")
        if not await uow.inventory.try_complete(product_id, quantity):
            raise InvalidState(
                f"Cannot complete {quantity} of {product_id}: only {before.reserved} reserved"
            )

        after = await uow.inventory.get_by_product(product_id)
        await self._append(
            uow, product_id, InventoryAction.COMPLETE,
            quantity_before=before.quantity, quantity_after=after.quantity,
            reserved_before=before.reserved, reserved_after=after.reserved,
            reason=context.reason or f"Order {context.order_id} fulfilled",
            source=context.source, order_id=context.order_id, changed_by=context.owner_id,
        )
        if after.is_low_stock and not before.is_low_stock:
            logger.warning(
                f"Low stock alert: product {product_id} has {after.quantity} units "
                f"(threshold: {after.low_stock_threshold})"
            )
        logger.info(f"Completed {quantity} of {product_id} for order {context.order_id}")
        return after

    async def adjust(
        self, uow, product_id: str, delta: int, reason: str,
        source: InventorySource = InventorySource.ADJUSTMENT, changed_by: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> InventoryRecord:
        """Change the on-hand quantity. Reserved stock is never touched."""
        if delta == 0:
            raise ValidationFailed(["Adjustment must be non-zero"])

        record = await uow.inventory.get_by_product(product_id, for_update=True)
        if record is None:
            raise InventoryNotFound(f"Inventory record not found for product {product_id}")

        new_quantity = record.quantity + delta
        if new_quantity < 0:
            raise InvalidState("Insufficient inventory. Cannot reduce below zero.")
        if new_quantity < record.reserved:
            raise InvalidState("Cannot reduce inventory below reserved quantity")

        is_low_stock = new_quantity <= record.low_stock_threshold
        await uow.inventory.update_counters(product_id, new_quantity, record.reserved, is_low_stock)
        await self._append(
            uow, product_id, InventoryAction.ADJUST,
            quantity_before=record.quantity, quantity_after=new_quantity,
            reserved_before=record.reserved, reserved_after=record.reserved,
            reason=reason, source=source, order_id=order_id, changed_by=changed_by,
        )
        if is_low_stock and not record.is_low_stock:
            logger.warning(
                f"Low stock alert: product {product_id} has {new_quantity} units "
                f"(threshold: {record.low_stock_threshold})"
            )
        return await uow.inventory.get_by_product(product_id)

    async def history(self, uow, product_id: str):
        return await uow.inventory.list_history(product_id=product_id)

    async def _append(
        self, uow, product_id: str, action: InventoryAction, *, quantity_before: int,
        quantity_after: int, reserved_before: int, reserved_after: int, reason: str,
        source: InventorySource, order_id: Optional[str] = None, changed_by: Optional[str] = None,
    ) -> None:
        await uow.inventory.add_history(
            InventoryHistoryEntry(
                id=str(uuid.uuid4()),
                product_id=product_id,
                action=action,
                quantity_before=quantity_before,
                quantity_after=quantity_after,
                quantity_changed=quantity_after - quantity_before,
                reserved_before=reserved_before,
                reserved_after=reserved_after,
                reason=reason,
                source=source,
                order_id=order_id,
                changed_by=changed_by,
                created_at=self._clock(),
            )
        )


class StockReservationUseCase:
    """Standalone reserve/release/complete, each in its own transaction"""

    def __init__(self, unit_of_work, ledger: InventoryLedger):
        self._uow = unit_of_work
        self._ledger = ledger

    async def reserve(self, product_id: str, quantity: int, context: ReservationContext) -> InventoryRecord:
        async with self._uow() as uow:
            record = await self._ledger.reserve(uow, product_id, quantity, context)
            await uow.commit()
        return record

    async def release(self, product_id: str, quantity: int, context: ReservationContext) -> InventoryRecord:
        async with self._uow() as uow:
            record = await self._ledger.release(uow, product_id, quantity, context)
            await uow.commit()
        return record

    async def complete(self, product_id: str, quantity: int, context: ReservationContext) -> InventoryRecord:
        async with self._uow() as uow:
            record = await self._ledger.complete(uow, product_id, quantity, context)
            await uow.commit()
        return record
