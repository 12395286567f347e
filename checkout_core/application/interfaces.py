from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from checkout_core.domain.models import (
    Address,
    Cart,
    CartItem,
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
)


class CheckoutRepository(ABC):
    @abstractmethod
    async def get_by_id(self, checkout_id: str) -> Optional[CheckoutSession]:
        """Checkout with cart items and address snapshots resolved"""

    @abstractmethod
    async def create(self, checkout: CheckoutSession) -> None:
        pass

    @abstractmethod
    async def transition_status(
        self, checkout_id: str, expected: CheckoutStatus, new_status: CheckoutStatus
    ) -> bool:
        """Compare-and-swap on status. False when the current status is not `expected`."""

    @abstractmethod
    async def count(self, status: Optional[CheckoutStatus] = None) -> int:
        pass


class AddressRepository(ABC):
    @abstractmethod
    async def get_by_id(self, address_id: str) -> Optional[Address]:
        pass

    @abstractmethod
    async def create(self, address_id: str, owner, address: Address) -> None:
        pass


class CartRepository(ABC):
    @abstractmethod
    async def get_by_id(self, cart_id: str) -> Optional[Cart]:
        pass

    @abstractmethod
    async def create(self, cart: Cart) -> None:
        pass

    @abstractmethod
    async def add_item(self, item: CartItem) -> None:
        pass

    @abstractmethod
    async def list_active_items(self, cart_id: str) -> List[CartItem]:
        pass

    @abstractmethod
    async def soft_delete_items(self, cart_item_ids: List[str], deleted_at: datetime) -> None:
        pass

    @abstractmethod
    async def update_totals(self, cart_id: str, subtotal, tax, shipping, total) -> None:
        pass


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def exists_with_number(self, order_number: str) -> bool:
        pass

    @abstractmethod
    async def create(self, order: Order) -> None:
        pass

    @abstractmethod
    async def add_item(self, item: OrderItem) -> None:
        pass

    @abstractmethod
    async def update_status(self, order_id: str, status: OrderStatus) -> None:
        pass

    @abstractmethod
    async def update_payment_status(self, order_id: str, payment_status: OrderPaymentStatus) -> None:
        pass

    @abstractmethod
    async def count(self, checkout_id: Optional[str] = None) -> int:
        pass


class InventoryRepository(ABC):
    @abstractmethod
    async def get_by_product(self, product_id: str, for_update: bool = False) -> Optional[InventoryRecord]:
        pass

    @abstractmethod
    async def create(self, record: InventoryRecord) -> None:
        pass

    @abstractmethod
    async def try_reserve(self, product_id: str, quantity: int) -> bool:
        """Conditional decrement of `available`. False when it would go negative."""

    @abstractmethod
    async def try_complete(self, product_id: str, quantity: int) -> bool:
        """Conditional decrement of both `quantity` and `reserved`. False when fewer than `quantity` are reserved."""

    @abstractmethod
    async def update_counters(
        self, product_id: str, quantity: int, reserved: int, is_low_stock: bool
    ) -> None:
        pass

    @abstractmethod
    async def add_history(self, entry: InventoryHistoryEntry) -> None:
        pass

    @abstractmethod
    async def list_history(
        self, product_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> List[InventoryHistoryEntry]:
        pass


class PaymentRepository(ABC):
    @abstractmethod
    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def create(self, payment: Payment) -> None:
        pass

    @abstractmethod
    async def update_status(
        self, payment_id: str, status: PaymentStatus, admin_notes: Optional[str] = None
    ) -> None:
        pass


class PaymentConfirmationRepository(ABC):
    @abstractmethod
    async def get_by_id(self, confirmation_id: str) -> Optional[PaymentConfirmation]:
        pass

    @abstractmethod
    async def get_by_payment_id(self, payment_id: str) -> Optional[PaymentConfirmation]:
        pass

    @abstractmethod
    async def create(self, confirmation: PaymentConfirmation) -> None:
        pass

    @abstractmethod
    async def update(self, confirmation_id: str, **values) -> None:
        pass

    @abstractmethod
    async def transition_status(
        self, confirmation_id: str, expected: ConfirmationStatus, new_status: ConfirmationStatus, **values
    ) -> bool:
        """Compare-and-swap on confirmation_status; False when the row was not in `expected`."""
        pass

    @abstractmethod
    async def append_history(self, confirmation_id: str, entry: ConfirmationHistoryEntry) -> None:
        pass

    @abstractmethod
    async def find_due_for_retry(self, now: datetime) -> List[PaymentConfirmation]:
        pass

    @abstractmethod
    async def list_by_status(self, status: ConfirmationStatus) -> List[PaymentConfirmation]:
        pass

    @abstractmethod
    async def count(self, status: Optional[ConfirmationStatus] = None) -> int:
        pass


class OrderHistoryRepository(ABC):
    """Append-only: no update or delete"""

    @abstractmethod
    async def create(self, event: OrderHistoryEvent) -> None:
        pass

    @abstractmethod
    async def list_for_order(
        self,
        order_id: str,
        event_type: Optional[OrderEventType] = None,
        change_source=None,
    ) -> List[OrderHistoryEvent]:
        pass

    @abstractmethod
    async def count(self, order_id: Optional[str] = None) -> int:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def checkouts(self) -> CheckoutRepository:
        pass

    @property
    @abstractmethod
    def addresses(self) -> AddressRepository:
        pass

    @property
    @abstractmethod
    def carts(self) -> CartRepository:
        pass

    @property
    @abstractmethod
    def orders(self) -> OrderRepository:
        pass

    @property
    @abstractmethod
    def inventory(self) -> InventoryRepository:
        pass

    @property
    @abstractmethod
    def payments(self) -> PaymentRepository:
        pass

    @property
    @abstractmethod
    def confirmations(self) -> PaymentConfirmationRepository:
        pass

    @property
    @abstractmethod
    def order_history(self) -> OrderHistoryRepository:
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class NotificationsService(ABC):
    @abstractmethod
    async def send(self, recipient: str, message: str, reference_id: str, idempotency_key: str) -> bool:
        pass
