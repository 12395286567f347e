from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy import select, insert, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic_core import to_jsonable_python

from checkout_core.domain.models import (
    Address,
    Cart,
    CartItem,
    CheckoutLineItem,
    CheckoutSession,
    CheckoutStatus,
    ConfirmationHistoryEntry,
    ConfirmationStatus,
    InventoryHistoryEntry,
    InventoryRecord,
    Order,
    OrderEventType,
    OrderHistoryEvent,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentConfirmation,
    PaymentStatus,
    owner_columns,
    owner_from_columns,
)
from checkout_core.infrastructure.db_schema import (
    addresses_tbl,
    carts_tbl,
    cart_items_tbl,
    checkouts_tbl,
    confirmation_history_tbl,
    inventory_history_tbl,
    inventory_tbl,
    order_history_tbl,
    order_items_tbl,
    orders_tbl,
    payment_confirmations_tbl,
    payments_tbl,
)
from checkout_core.application.interfaces import (
    AddressRepository,
    CartRepository,
    CheckoutRepository,
    InventoryRepository,
    OrderHistoryRepository,
    OrderRepository,
    PaymentConfirmationRepository,
    PaymentRepository,
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SQLAlchemyAddressRepository(AddressRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, address_id: str) -> Optional[Address]:
        result = await self._session.execute(
            select(addresses_tbl).where(addresses_tbl.c.id == address_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def create(self, address_id: str, owner, address: Address) -> None:
        await self._session.execute(
            insert(addresses_tbl).values(id=address_id, **owner_columns(owner), **address.model_dump())
        )

    @staticmethod
    def _to_domain(row) -> Address:
        return Address(
            first_name=row.first_name,
            last_name=row.last_name,
            line1=row.line1,
            line2=row.line2,
            city=row.city,
            state=row.state,
            postal_code=row.postal_code,
            country=row.country,
            phone=row.phone,
        )


class SQLAlchemyCartRepository(CartRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, cart_id: str) -> Optional[Cart]:
        result = await self._session.execute(select(carts_tbl).where(carts_tbl.c.id == cart_id))
        row = result.fetchone()
        if not row:
            return None
        return Cart(
            id=row.id,
            subtotal=row.subtotal,
            tax=row.tax,
            shipping=row.shipping,
            total=row.total,
            items=await self.list_active_items(cart_id),
        )

    async def create(self, cart: Cart) -> None:
        await self._session.execute(
            insert(carts_tbl).values(
                id=cart.id,
                subtotal=cart.subtotal,
                tax=cart.tax,
                shipping=cart.shipping,
                total=cart.total,
            )
        )

    async def add_item(self, item: CartItem) -> None:
        await self._session.execute(insert(cart_items_tbl).values(**item.model_dump()))

    async def list_active_items(self, cart_id: str) -> List[CartItem]:
        result = await self._session.execute(
            select(cart_items_tbl)
            .where(cart_items_tbl.c.cart_id == cart_id, cart_items_tbl.c.deleted_at.is_(None))
            .order_by(cart_items_tbl.c.id)
        )
        return [self._item_to_domain(row) for row in result.fetchall()]

    async def soft_delete_items(self, cart_item_ids: List[str], deleted_at: datetime) -> None:
        if not cart_item_ids:
            return
        await self._session.execute(
            update(cart_items_tbl)
            .where(cart_items_tbl.c.id.in_(cart_item_ids), cart_items_tbl.c.deleted_at.is_(None))
            .values(deleted_at=deleted_at)
        )

    async def update_totals(self, cart_id: str, subtotal, tax, shipping, total) -> None:
        await self._session.execute(
            update(carts_tbl)
            .where(carts_tbl.c.id == cart_id)
            .values(subtotal=subtotal, tax=tax, shipping=shipping, total=total)
        )

    @staticmethod
    def _item_to_domain(row) -> CartItem:
        return CartItem(
            id=row.id,
            cart_id=row.cart_id,
            product_id=row.product_id,
            variant_id=row.variant_id,
            price=row.price,
            quantity=row.quantity,
            deleted_at=_as_utc(row.deleted_at),
        )


class SQLAlchemyCheckoutRepository(CheckoutRepository):
    def __init__(self, session: AsyncSession):
        self._session = session
        self._addresses = SQLAlchemyAddressRepository(session)

    async def get_by_id(self, checkout_id: str) -> Optional[CheckoutSession]:
        result = await self._session.execute(
            select(checkouts_tbl).where(checkouts_tbl.c.id == checkout_id)
        )
        row = result.fetchone()
        if not row:
            return None

        item_ids = list(row.cart_item_ids or [])
        items = []
        if item_ids:
            items_result = await self._session.execute(
                select(cart_items_tbl).where(
                    cart_items_tbl.c.id.in_(item_ids), cart_items_tbl.c.deleted_at.is_(None)
                )
            )
            by_id = {r.id: r for r in items_result.fetchall()}
            # keep the order the checkout listed them in
            items = [
                CheckoutLineItem(
                    cart_item_id=r.id,
                    product_id=r.product_id,
                    variant_id=r.variant_id,
                    price=r.price,
                    quantity=r.quantity,
                )
                for r in (by_id.get(item_id) for item_id in item_ids)
                if r is not None
            ]

        shipping_address = None
        if row.shipping_address_id:
            shipping_address = await self._addresses.get_by_id(row.shipping_address_id)
        billing_address = None
        if row.billing_address_id:
            billing_address = await self._addresses.get_by_id(row.billing_address_id)

        return CheckoutSession(
            id=row.id,
            owner=owner_from_columns(row.user_id, row.session_id),
            cart_id=row.cart_id,
            cart_item_ids=item_ids,
            items=items,
            shipping_address_id=row.shipping_address_id,
            billing_address_id=row.billing_address_id,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method_id=row.payment_method_id,
            shipping_method=row.shipping_method,
            status=CheckoutStatus(row.status),
            expires_at=_as_utc(row.expires_at),
        )

    async def create(self, checkout: CheckoutSession) -> None:
        await self._session.execute(
            insert(checkouts_tbl).values(
                id=checkout.id,
                **owner_columns(checkout.owner),
                cart_id=checkout.cart_id,
                cart_item_ids=checkout.cart_item_ids,
                shipping_address_id=checkout.shipping_address_id,
                billing_address_id=checkout.billing_address_id,
                payment_method_id=checkout.payment_method_id,
                shipping_method=checkout.shipping_method,
                status=checkout.status,
                expires_at=checkout.expires_at,
            )
        )

    async def transition_status(
        self, checkout_id: str, expected: CheckoutStatus, new_status: CheckoutStatus
    ) -> bool:
        result = await self._session.execute(
            update(checkouts_tbl)
            .where(checkouts_tbl.c.id == checkout_id, checkouts_tbl.c.status == expected)
            .values(status=new_status, updated_at=_now())
        )
        return result.rowcount == 1

    async def count(self, status: Optional[CheckoutStatus] = None) -> int:
        stmt = select(func.count()).select_from(checkouts_tbl)
        if status is not None:
            stmt = stmt.where(checkouts_tbl.c.status == status)
        return (await self._session.execute(stmt)).scalar_one()


class SQLAlchemyOrderRepository(OrderRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.id == order_id)
        )
        row = result.fetchone()
        if not row:
            return None
        items_result = await self._session.execute(
            select(order_items_tbl)
            .where(order_items_tbl.c.order_id == order_id)
            .order_by(order_items_tbl.c.product_id)
        )
        items = [self._item_to_domain(r) for r in items_result.fetchall()]
        return self._to_domain(row, items)

    async def exists_with_number(self, order_number: str) -> bool:
        result = await self._session.execute(
            select(orders_tbl.c.id).where(orders_tbl.c.order_number == order_number)
        )
        return result.fetchone() is not None

    async def create(self, order: Order) -> None:
        stmt = insert(orders_tbl).values(
            id=order.id,
            order_number=order.order_number,
            **owner_columns(order.owner),
            checkout_id=order.checkout_id,
            status=order.status,
            payment_status=order.payment_status,
            subtotal=order.subtotal,
            tax=order.tax,
            shipping=order.shipping,
            discount=order.discount,
            total=order.total,
            currency=order.currency,
            shipping_method=order.shipping_method,
            shipping_address=order.shipping_address.model_dump() if order.shipping_address else None,
            billing_address=order.billing_address.model_dump() if order.billing_address else None,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
        await self._session.execute(stmt)

    async def add_item(self, item: OrderItem) -> None:
        await self._session.execute(insert(order_items_tbl).values(**item.model_dump()))

    async def update_status(self, order_id: str, status: OrderStatus) -> None:
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id)
            .values(status=status, updated_at=_now())
        )
        await self._session.execute(stmt)

    async def update_payment_status(self, order_id: str, payment_status: OrderPaymentStatus) -> None:
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id)
            .values(payment_status=payment_status, updated_at=_now())
        )
        await self._session.execute(stmt)

    async def count(self, checkout_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(orders_tbl)
        if checkout_id is not None:
            stmt = stmt.where(orders_tbl.c.checkout_id == checkout_id)
        return (await self._session.execute(stmt)).scalar_one()

    def _to_domain(self, row, items: List[OrderItem]) -> Order:
        """DB → Domain"""
        return Order(
            id=row.id,
            order_number=row.order_number,
            owner=owner_from_columns(row.user_id, row.session_id),
            checkout_id=row.checkout_id,
            status=OrderStatus(row.status),
            payment_status=OrderPaymentStatus(row.payment_status),
            subtotal=row.subtotal,
            tax=row.tax,
            shipping=row.shipping,
            discount=row.discount,
            total=row.total,
            currency=row.currency,
            shipping_method=row.shipping_method,
            shipping_address=Address(**row.shipping_address) if row.shipping_address else None,
            billing_address=Address(**row.billing_address) if row.billing_address else None,
            items=items,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _item_to_domain(row) -> OrderItem:
        return OrderItem(
            id=row.id,
            order_id=row.order_id,
            product_id=row.product_id,
            variant_id=row.variant_id,
            price=row.price,
            quantity=row.quantity,
            subtotal=row.subtotal,
        )


class SQLAlchemyInventoryRepository(InventoryRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_product(self, product_id: str, for_update: bool = False) -> Optional[InventoryRecord]:
        stmt = select(inventory_tbl).where(inventory_tbl.c.product_id == product_id)
        if for_update:
            # no-op on SQLite, where the whole database is write-locked instead
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def create(self, record: InventoryRecord) -> None:
        await self._session.execute(
            insert(inventory_tbl).values(
                id=record.id,
                product_id=record.product_id,
                quantity=record.quantity,
                reserved=record.reserved,
                available=record.available,
                low_stock_threshold=record.low_stock_threshold,
                is_low_stock=record.is_low_stock,
                updated_at=record.updated_at or _now(),
            )
        )

    async def try_reserve(self, product_id: str, quantity: int) -> bool:
        result = await self._session.execute(
            update(inventory_tbl)
            .where(inventory_tbl.c.product_id == product_id, inventory_tbl.c.available >= quantity)
            .values(
                reserved=inventory_tbl.c.reserved + quantity,
                available=inventory_tbl.c.available - quantity,
                updated_at=_now(),
            )
        )
        return result.rowcount == 1

    async def try_complete(self, product_id: str, quantity: int) -> bool:
        # available is unchanged: the units already left it when reserved
        result = await self._session.execute(
            update(inventory_tbl)
            .where(inventory_tbl.c.product_id == product_id, inventory_tbl.c.reserved >= quantity)
            .values(
                quantity=inventory_tbl.c.quantity - quantity,
                reserved=inventory_tbl.c.reserved - quantity,
                is_low_stock=(inventory_tbl.c.quantity - quantity) <= inventory_tbl.c.low_stock_threshold,
                updated_at=_now(),
            )
        )
        return result.rowcount == 1

    async def update_counters(
        self, product_id: str, quantity: int, reserved: int, is_low_stock: bool
    ) -> None:
        await self._session.execute(
            update(inventory_tbl)
            .where(inventory_tbl.c.product_id == product_id)
            .values(
                quantity=quantity,
                reserved=reserved,
                available=quantity - reserved,
                is_low_stock=is_low_stock,
                updated_at=_now(),
            )
        )

    async def add_history(self, entry: InventoryHistoryEntry) -> None:
        await self._session.execute(
            insert(inventory_history_tbl).values(
                id=entry.id,
                product_id=entry.product_id,
                action=entry.action.value,
                quantity_before=entry.quantity_before,
                quantity_after=entry.quantity_after,
                quantity_changed=entry.quantity_changed,
                reserved_before=entry.reserved_before,
                reserved_after=entry.reserved_after,
                reason=entry.reason,
                source=entry.source.value,
                order_id=entry.order_id,
                changed_by=entry.changed_by,
                created_at=entry.created_at,
            )
        )

    async def list_history(
        self, product_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> List[InventoryHistoryEntry]:
        stmt = select(inventory_history_tbl).order_by(inventory_history_tbl.c.seq.asc())
        if product_id is not None:
            stmt = stmt.where(inventory_history_tbl.c.product_id == product_id)
        if order_id is not None:
            stmt = stmt.where(inventory_history_tbl.c.order_id == order_id)
        result = await self._session.execute(stmt)
        return [
            InventoryHistoryEntry(
                id=row.id,
                product_id=row.product_id,
                action=row.action,
                quantity_before=row.quantity_before,
                quantity_after=row.quantity_after,
                quantity_changed=row.quantity_changed,
                reserved_before=row.reserved_before,
                reserved_after=row.reserved_after,
                reason=row.reason,
                source=row.source,
                order_id=row.order_id,
                changed_by=row.changed_by,
                created_at=_as_utc(row.created_at),
            )
            for row in result.fetchall()
        ]

    @staticmethod
    def _to_domain(row) -> InventoryRecord:
        return InventoryRecord(
            id=row.id,
            product_id=row.product_id,
            quantity=row.quantity,
            reserved=row.reserved,
            available=row.available,
            low_stock_threshold=row.low_stock_threshold,
            is_low_stock=row.is_low_stock,
            updated_at=_as_utc(row.updated_at),
        )


class SQLAlchemyPaymentRepository(PaymentRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        result = await self._session.execute(
            select(payments_tbl).where(payments_tbl.c.id == payment_id)
        )
        row = result.fetchone()
        if not row:
            return None
        return Payment(
            id=row.id,
            order_id=row.order_id,
            amount=row.amount,
            payment_method_code=row.payment_method_code,
            status=PaymentStatus(row.status),
            admin_notes=row.admin_notes,
            created_at=_as_utc(row.created_at),
        )

    async def create(self, payment: Payment) -> None:
        await self._session.execute(
            insert(payments_tbl).values(
                id=payment.id,
                order_id=payment.order_id,
                amount=payment.amount,
                payment_method_code=payment.payment_method_code,
                status=payment.status,
                admin_notes=payment.admin_notes,
                created_at=payment.created_at,
            )
        )

    async def update_status(
        self, payment_id: str, status: PaymentStatus, admin_notes: Optional[str] = None
    ) -> None:
        values = {"status": status, "updated_at": _now()}
        if admin_notes is not None:
            values["admin_notes"] = admin_notes
        await self._session.execute(
            update(payments_tbl).where(payments_tbl.c.id == payment_id).values(**values)
        )


class SQLAlchemyPaymentConfirmationRepository(PaymentConfirmationRepository):
    _UPDATABLE = {
        "confirmation_type",
        "confirmation_method",
        "confirmation_status",
        "confirmation_notes",
        "confirmation_evidence",
        "automation_rules",
        "retry_count",
        "next_retry_at",
        "confirmed_at",
        "confirmed_by",
    }

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, confirmation_id: str) -> Optional[PaymentConfirmation]:
        result = await self._session.execute(
            select(payment_confirmations_tbl).where(payment_confirmations_tbl.c.id == confirmation_id)
        )
        row = result.fetchone()
        return await self._to_domain(row) if row else None

    async def get_by_payment_id(self, payment_id: str) -> Optional[PaymentConfirmation]:
        result = await self._session.execute(
            select(payment_confirmations_tbl).where(payment_confirmations_tbl.c.payment_id == payment_id)
        )
        row = result.fetchone()
        return await self._to_domain(row) if row else None

    async def create(self, confirmation: PaymentConfirmation) -> None:
        await self._session.execute(
            insert(payment_confirmations_tbl).values(
                id=confirmation.id,
                payment_id=confirmation.payment_id,
                confirmation_type=confirmation.confirmation_type,
                confirmation_method=confirmation.confirmation_method,
                confirmation_status=confirmation.confirmation_status,
                confirmation_notes=confirmation.confirmation_notes,
                confirmation_evidence=to_jsonable_python(confirmation.confirmation_evidence),
                automation_rules=list(confirmation.automation_rules),
                retry_count=confirmation.retry_count,
                next_retry_at=confirmation.next_retry_at,
                confirmed_at=confirmation.confirmed_at,
                confirmed_by=confirmation.confirmed_by,
                created_at=confirmation.created_at,
            )
        )
        for entry in confirmation.confirmation_history:
            await self.append_history(confirmation.id, entry)

    async def update(self, confirmation_id: str, **values) -> None:
        await self._session.execute(
            update(payment_confirmations_tbl)
            .where(payment_confirmations_tbl.c.id == confirmation_id)
            .values(**self._prepare(values))
        )

    async def transition_status(
        self, confirmation_id: str, expected: ConfirmationStatus, new_status: ConfirmationStatus, **values
    ) -> bool:
        values["confirmation_status"] = new_status
        result = await self._session.execute(
            update(payment_confirmations_tbl)
            .where(
                payment_confirmations_tbl.c.id == confirmation_id,
                payment_confirmations_tbl.c.confirmation_status == expected,
            )
            .values(**self._prepare(values))
        )
        return result.rowcount == 1

    def _prepare(self, values: dict) -> dict:
        unknown = set(values) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        if "confirmation_evidence" in values:
            values["confirmation_evidence"] = to_jsonable_python(values["confirmation_evidence"])
        return values

    async def append_history(self, confirmation_id: str, entry: ConfirmationHistoryEntry) -> None:
        await self._session.execute(
            insert(confirmation_history_tbl).values(
                confirmation_id=confirmation_id,
                status=entry.status.value,
                action=entry.action,
                actor=entry.actor,
                notes=entry.notes,
                timestamp=entry.timestamp,
            )
        )

    async def find_due_for_retry(self, now: datetime) -> List[PaymentConfirmation]:
        result = await self._session.execute(
            select(payment_confirmations_tbl)
            .where(
                payment_confirmations_tbl.c.confirmation_status == ConfirmationStatus.PENDING,
                payment_confirmations_tbl.c.next_retry_at.is_not(None),
                payment_confirmations_tbl.c.next_retry_at <= now,
            )
            .order_by(payment_confirmations_tbl.c.next_retry_at.asc())
        )
        return [await self._to_domain(row) for row in result.fetchall()]

    async def list_by_status(self, status: ConfirmationStatus) -> List[PaymentConfirmation]:
        result = await self._session.execute(
            select(payment_confirmations_tbl)
            .where(payment_confirmations_tbl.c.confirmation_status == status)
            .order_by(payment_confirmations_tbl.c.created_at.desc())
        )
        return [await self._to_domain(row) for row in result.fetchall()]

    async def count(self, status: Optional[ConfirmationStatus] = None) -> int:
        stmt = select(func.count()).select_from(payment_confirmations_tbl)
        if status is not None:
            stmt = stmt.where(payment_confirmations_tbl.c.confirmation_status == status)
        return (await self._session.execute(stmt)).scalar_one()

    async def _history(self, confirmation_id: str) -> List[ConfirmationHistoryEntry]:
        result = await self._session.execute(
            select(confirmation_history_tbl)
            .where(confirmation_history_tbl.c.confirmation_id == confirmation_id)
            .order_by(confirmation_history_tbl.c.seq.asc())
        )
        return [
            ConfirmationHistoryEntry(
                status=ConfirmationStatus(row.status),
                action=row.action,
                actor=row.actor,
                notes=row.notes,
                timestamp=_as_utc(row.timestamp),
            )
            for row in result.fetchall()
        ]

    async def _to_domain(self, row) -> PaymentConfirmation:
        return PaymentConfirmation(
            id=row.id,
            payment_id=row.payment_id,
            confirmation_type=row.confirmation_type,
            confirmation_method=row.confirmation_method,
            confirmation_status=row.confirmation_status,
            confirmation_notes=row.confirmation_notes,
            confirmation_evidence=row.confirmation_evidence or {},
            automation_rules=row.automation_rules or [],
            retry_count=row.retry_count,
            next_retry_at=_as_utc(row.next_retry_at),
            confirmed_at=_as_utc(row.confirmed_at),
            confirmed_by=row.confirmed_by,
            confirmation_history=await self._history(row.id),
            created_at=_as_utc(row.created_at),
        )


class SQLAlchemyOrderHistoryRepository(OrderHistoryRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event: OrderHistoryEvent) -> None:
        await self._session.execute(
            insert(order_history_tbl).values(
                id=event.id,
                order_id=event.order_id,
                event_type=event.event_type.value,
                change_source=event.change_source.value,
                previous_value=event.previous_value,
                new_value=event.new_value,
                changed_by=event.changed_by,
                change_reason=event.change_reason,
                created_at=event.created_at,
            )
        )

    async def list_for_order(
        self,
        order_id: str,
        event_type: Optional[OrderEventType] = None,
        change_source=None,
    ) -> List[OrderHistoryEvent]:
        stmt = (
            select(order_history_tbl)
            .where(order_history_tbl.c.order_id == order_id)
            .order_by(order_history_tbl.c.seq.asc())
        )
        if event_type is not None:
            stmt = stmt.where(order_history_tbl.c.event_type == OrderEventType(event_type).value)
        if change_source is not None:
            stmt = stmt.where(order_history_tbl.c.change_source == getattr(change_source, "value", change_source))
        result = await self._session.execute(stmt)
        return [
            OrderHistoryEvent(
                id=row.id,
                order_id=row.order_id,
                event_type=row.event_type,
                change_source=row.change_source,
                previous_value=row.previous_value,
                new_value=row.new_value,
                changed_by=row.changed_by,
                change_reason=row.change_reason,
                created_at=_as_utc(row.created_at),
            )
            for row in result.fetchall()
        ]

    async def count(self, order_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(order_history_tbl)
        if order_id is not None:
            stmt = stmt.where(order_history_tbl.c.order_id == order_id)
        return (await self._session.execute(stmt)).scalar_one()
