from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field


class OwnerType(str, Enum):
    AUTHENTICATED = "authenticated"
    GUEST = "guest"
    API_TOKEN = "api_token"
    ADMIN = "admin"


class AuthenticatedOwner(BaseModel):
    kind: Literal["authenticated"] = "authenticated"
    user_id: str

    @property
    def id(self) -> str:
        return self.user_id


class GuestOwner(BaseModel):
    kind: Literal["guest"] = "guest"
    session_id: str

    @property
    def id(self) -> str:
        return self.session_id


Owner = Annotated[Union[AuthenticatedOwner, GuestOwner], Field(discriminator="kind")]


def owner_from_columns(user_id: Optional[str], session_id: Optional[str]):
    """DB columns → Owner. Exactly one of the two columns is set."""
    if user_id and session_id:
        raise ValueError("Owner has both user_id and session_id")
    if user_id:
        return AuthenticatedOwner(user_id=user_id)
    if session_id:
        return GuestOwner(session_id=session_id)
    raise ValueError("Owner has neither user_id nor session_id")


def owner_columns(owner) -> dict:
    if isinstance(owner, AuthenticatedOwner):
        return {"user_id": owner.user_id, "session_id": None}
    return {"user_id": None, "session_id": owner.session_id}


class ChangeSource(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    SYSTEM = "system"
    PAYMENT_GATEWAY = "payment_gateway"
    WEBHOOK = "webhook"
    API_TOKEN = "api_token"


class Requester(BaseModel):
    """Caller identity supplied by the authentication layer"""
    owner_id: str
    owner_type: OwnerType

    @property
    def is_privileged(self) -> bool:
        return self.owner_type in (OwnerType.ADMIN, OwnerType.API_TOKEN)

    @property
    def change_source(self) -> ChangeSource:
        if self.owner_type == OwnerType.ADMIN:
            return ChangeSource.ADMIN
        if self.owner_type == OwnerType.API_TOKEN:
            return ChangeSource.API_TOKEN
        return ChangeSource.CUSTOMER

    def owns(self, owner) -> bool:
        if self.is_privileged:
            return True
        if self.owner_type == OwnerType.AUTHENTICATED:
            return isinstance(owner, AuthenticatedOwner) and owner.user_id == self.owner_id
        return isinstance(owner, GuestOwner) and owner.session_id == self.owner_id


class Address(BaseModel):
    """Value Object: address snapshot copied onto the order"""
    first_name: str
    last_name: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str
    phone: Optional[str] = None


class CheckoutStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


class CheckoutLineItem(BaseModel):
    cart_item_id: str
    product_id: str
    variant_id: Optional[str] = None
    price: Decimal
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


class CheckoutSession(BaseModel):
    """Domain Entity: checkout session, already resolved by the cart layer"""
    id: str
    owner: Owner
    cart_id: str
    cart_item_ids: list[str]
    items: list[CheckoutLineItem] = []
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method_id: Optional[str] = None
    shipping_method: Optional[str] = None
    status: CheckoutStatus
    expires_at: Optional[datetime] = None

    def can_be_completed(self) -> bool:
        """Business rule: only active or mid-flight locked checkouts turn into orders"""
        return self.status in (CheckoutStatus.ACTIVE, CheckoutStatus.LOCKED)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class CartItem(BaseModel):
    id: str
    cart_id: str
    product_id: str
    variant_id: Optional[str] = None
    price: Decimal
    quantity: int
    deleted_at: Optional[datetime] = None


class Cart(BaseModel):
    id: str
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    items: list[CartItem] = []


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPING = "shipping"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    RETURNED = "returned"


class OrderPaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class OrderItem(BaseModel):
    id: str
    order_id: str
    product_id: str
    variant_id: Optional[str] = None
    price: Decimal
    quantity: int = Field(ge=1)
    subtotal: Decimal


class Order(BaseModel):
    """Domain Entity: order"""
    id: str
    order_number: str
    owner: Owner
    checkout_id: Optional[str] = None
    status: OrderStatus
    payment_status: OrderPaymentStatus
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    shipping_method: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    items: list[OrderItem] = []
    created_at: datetime
    updated_at: datetime

    def can_be_cancelled(self) -> bool:
        """Business rule: cancellable until it leaves the warehouse"""
        return self.status in (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)


class InventoryAction(str, Enum):
    INITIALIZE = "initialize"
    RESERVE = "reserve"
    RELEASE = "release"
    ADJUST = "adjust"
    COMPLETE = "complete"


class InventorySource(str, Enum):
    ORDER = "order"
    SYSTEM = "system"
    MANUAL = "manual"
    ADJUSTMENT = "adjustment"
    RETURN = "return"


class InventoryRecord(BaseModel):
    id: str
    product_id: str
    quantity: int
    reserved: int
    available: int
    low_stock_threshold: int
    is_low_stock: bool = False
    updated_at: Optional[datetime] = None


class InventoryHistoryEntry(BaseModel):
    id: str
    product_id: str
    action: InventoryAction
    quantity_before: int
    quantity_after: int
    quantity_changed: int
    reserved_before: int
    reserved_after: int
    reason: str
    source: InventorySource
    order_id: Optional[str] = None
    changed_by: Optional[str] = None
    created_at: datetime


class ReservationContext(BaseModel):
    """Who is holding the stock and why"""
    order_id: Optional[str] = None
    owner_id: Optional[str] = None
    reason: Optional[str] = None
    source: InventorySource = InventorySource.ORDER


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Payment(BaseModel):
    id: str
    order_id: str
    amount: Decimal
    payment_method_code: str
    status: PaymentStatus
    admin_notes: Optional[str] = None
    created_at: datetime

    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING


class ConfirmationType(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"


class ConfirmationMethod(str, Enum):
    ADMIN_DASHBOARD = "admin_dashboard"
    API_CALL = "api_call"
    WEBHOOK = "webhook"
    EMAIL_CONFIRMATION = "email_confirmation"
    PHONE_CONFIRMATION = "phone_confirmation"


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_CONFIRMATION_STATUSES = frozenset(
    {ConfirmationStatus.CONFIRMED, ConfirmationStatus.FAILED, ConfirmationStatus.CANCELLED}
)


class ConfirmationHistoryEntry(BaseModel):
    status: ConfirmationStatus
    action: str
    timestamp: datetime
    actor: Optional[str] = None
    notes: Optional[str] = None


class PaymentConfirmation(BaseModel):
    """Domain Entity: approval workflow for one payment"""
    id: str
    payment_id: str
    confirmation_type: ConfirmationType
    confirmation_method: ConfirmationMethod
    confirmation_status: ConfirmationStatus
    confirmation_notes: Optional[str] = None
    confirmation_evidence: dict[str, Any] = {}
    automation_rules: list[str] = []
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    confirmation_history: list[ConfirmationHistoryEntry] = []
    created_at: datetime

    def is_pending(self) -> bool:
        return self.confirmation_status == ConfirmationStatus.PENDING

    def is_terminal(self) -> bool:
        return self.confirmation_status in TERMINAL_CONFIRMATION_STATUSES


class OrderEventType(str, Enum):
    ORDER_CREATED = "order_created"
    STATUS_CHANGED = "status_changed"
    PAYMENT_UPDATED = "payment_updated"
    NOTE_ADDED = "note_added"


class OrderHistoryEvent(BaseModel):
    """Immutable audit record"""
    id: str
    order_id: str
    event_type: OrderEventType
    change_source: ChangeSource
    previous_value: Optional[dict[str, Any]] = None
    new_value: Optional[dict[str, Any]] = None
    changed_by: Optional[str] = None
    change_reason: Optional[str] = None
    created_at: datetime


class BulkConfirmError(BaseModel):
    confirmation_id: str
    error: str


class BulkConfirmResult(BaseModel):
    confirmed: list[PaymentConfirmation] = []
    errors: list[BulkConfirmError] = []

    @property
    def success(self) -> bool:
        return not self.errors
