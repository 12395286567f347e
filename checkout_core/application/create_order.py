import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from pydantic import BaseModel

from checkout_core.domain.models import (
    CheckoutSession,
    CheckoutStatus,
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    Requester,
    ReservationContext,
)
from checkout_core.domain.exceptions import (
    CheckoutConflict,
    CheckoutNotFound,
    InvalidState,
    OrderNotFound,
    Unauthorized,
    ValidationFailed,
)
from checkout_core.application.inventory import InventoryLedger
from checkout_core.application.order_history import OrderHistoryRecorder
from checkout_core.application.order_number import OrderNumberGenerator


logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class OrderTotals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


class PricingPolicy:
    """Tax and shipping are pass-through zero; subclass to plug in a pricing engine.

    total >= subtotal holds only while discount is zero, which is the default.
    A subclass that returns a discount may bring the total below the
    subtotal. The discount is capped at the subtotal, so the total never
    goes negative.
    """

    def tax(self, checkout: CheckoutSession, subtotal: Decimal) -> Decimal:
        return ZERO

    def shipping(self, checkout: CheckoutSession, subtotal: Decimal) -> Decimal:
        return ZERO

    def discount(self, checkout: CheckoutSession, subtotal: Decimal) -> Decimal:
        return ZERO

    def totals(self, checkout: CheckoutSession) -> OrderTotals:
        subtotal = sum((item.subtotal for item in checkout.items), ZERO)
        tax = self.tax(checkout, subtotal)
        shipping = self.shipping(checkout, subtotal)
        discount = min(self.discount(checkout, subtotal), subtotal)
        return OrderTotals(
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            discount=discount,
            total=subtotal + tax + shipping - discount,
        )


def validate_checkout(checkout: CheckoutSession) -> None:
    errors = []
    if not checkout.items:
        errors.append("Checkout has no line items")
    for item in checkout.items:
        if item.quantity < 1:
            errors.append(f"Quantity for {item.product_id} must be at least 1")
        if item.price < 0:
            errors.append(f"Price for {item.product_id} cannot be negative")
    if checkout.shipping_address is None:
        errors.append("Shipping address is required")
    if checkout.billing_address is None:
        errors.append("Billing address is required")
    if not checkout.shipping_method:
        errors.append("Shipping method is required")
    if errors:
        raise ValidationFailed(errors)


class CreateOrderFromCheckoutUseCase:
    """Turns a resolved checkout into an Order inside the caller's transaction."""

    def __init__(
        self,
        order_numbers: OrderNumberGenerator,
        ledger: InventoryLedger,
        history: OrderHistoryRecorder,
        pricing: Optional[PricingPolicy] = None,
        currency: str = "USD",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._order_numbers = order_numbers
        self._ledger = ledger
        self._history = history
        self._pricing = pricing or PricingPolicy()
        self._currency = currency
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def __call__(self, uow, checkout: CheckoutSession, requester: Requester) -> Order:
        if not checkout.can_be_completed():
            raise InvalidState(f"Checkout {checkout.id} is {checkout.status.value}")
        if not requester.owns(checkout.owner):
            raise Unauthorized(f"Checkout {checkout.id} does not belong to the requester")
        validate_checkout(checkout)

        order_number = await self._order_numbers.generate(uow.orders)
        totals = self._pricing.totals(checkout)
        now = self._clock()
        order = Order(
            id=str(uuid.uuid4()),
            order_number=order_number,
            owner=checkout.owner,
            checkout_id=checkout.id,
            status=OrderStatus.PENDING,
            payment_status=OrderPaymentStatus.PENDING,
            subtotal=totals.subtotal,
            tax=totals.tax,
            shipping=totals.shipping,
            discount=totals.discount,
            total=totals.total,
            currency=self._currency,
            shipping_method=checkout.shipping_method,
            shipping_address=checkout.shipping_address.model_copy(),
            billing_address=checkout.billing_address.model_copy(),
            created_at=now,
            updated_at=now,
        )
        await uow.orders.create(order)

        items = []
        for line in checkout.items:
            item = OrderItem(
                id=str(uuid.uuid4()),
                order_id=order.id,
                product_id=line.product_id,
                variant_id=line.variant_id,
                price=line.price,
                quantity=line.quantity,
                subtotal=line.subtotal,
            )
            await uow.orders.add_item(item)
            items.append(item)

            # InsufficientStock propagates and takes the whole transaction down
            await self._ledger.reserve(
                uow,
                line.product_id,
                line.quantity,
                ReservationContext(order_id=order.id, owner_id=checkout.owner.id),
            )
            await self._history.record_order_creation(
                uow, order, requester.owner_id, requester.change_source
            )
            await self._history.record_status_change(
                uow, order.id, OrderStatus.PENDING, OrderStatus.PENDING,
                requester.owner_id, requester.change_source, "Order created from checkout",
            )

        order.items = items
        logger.info(f"Order {order.order_number} assembled from checkout {checkout.id}")
        return order


class CompleteCheckoutUseCase:
    def __init__(
        self,
        unit_of_work,
        create_order: CreateOrderFromCheckoutUseCase,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._uow = unit_of_work
        self._create_order = create_order
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def __call__(self, checkout_id: str, requester: Requester) -> Order:
        logger.info(f"Completing checkout {checkout_id} for {requester.owner_type.value} {requester.owner_id}")

        # 1. Load, authorise and lock
        async with self._uow() as uow:
            checkout = await uow.checkouts.get_by_id(checkout_id)
            if not checkout:
                raise CheckoutNotFound(f"Checkout {checkout_id} not found")
            if not requester.owns(checkout.owner):
                raise Unauthorized(f"Checkout {checkout_id} does not belong to the requester")
            if checkout.status != CheckoutStatus.ACTIVE:
                raise InvalidState(f"Checkout {checkout_id} is {checkout.status.value}, expected active")
            if checkout.is_expired(self._clock()):
                raise InvalidState(f"Checkout {checkout_id} has expired")

            if not await uow.checkouts.transition_status(
                checkout_id, CheckoutStatus.ACTIVE, CheckoutStatus.LOCKED
            ):
                raise CheckoutConflict(f"Checkout {checkout_id} is already being completed")
            await uow.commit()
        checkout.status = CheckoutStatus.LOCKED

        # 2. Assemble the order in one transaction
        try:
            async with self._uow() as uow:
                order = await self._create_order(uow, checkout, requester)

                if not await uow.checkouts.transition_status(
                    checkout_id, CheckoutStatus.LOCKED, CheckoutStatus.COMPLETED
                ):
                    raise CheckoutConflict(f"Checkout {checkout_id} lost its lock")

                await uow.carts.soft_delete_items(checkout.cart_item_ids, self._clock())
                await recalculate_cart_totals(uow, checkout.cart_id)
                await uow.commit()
        except Exception as e:
            logger.error(f"Order assembly for checkout {checkout_id} aborted: {e}")
            await self._unlock(checkout_id)
            raise

        # 3. Re-read the committed order
        async with self._uow() as uow:
            created = await uow.orders.get_by_id(order.id)
            if not created:
                raise OrderNotFound(f"Order {order.id} not found after commit")
        logger.info(f"Checkout {checkout_id} completed as order {created.order_number}")
        return created

    async def _unlock(self, checkout_id: str) -> None:
        async with self._uow() as uow:
            if await uow.checkouts.transition_status(
                checkout_id, CheckoutStatus.LOCKED, CheckoutStatus.ACTIVE
            ):
                await uow.commit()
                logger.info(f"Checkout {checkout_id} unlocked after failed assembly")


async def recalculate_cart_totals(uow, cart_id: str) -> None:
    remaining = await uow.carts.list_active_items(cart_id)
    subtotal = sum((item.price * item.quantity for item in remaining), ZERO)
    await uow.carts.update_totals(cart_id, subtotal=subtotal, tax=ZERO, shipping=ZERO, total=subtotal)
