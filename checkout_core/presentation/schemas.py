from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from checkout_core.application.automation import AutomationRule
from checkout_core.domain.models import (
    Address,
    ConfirmationHistoryEntry,
    ConfirmationMethod,
    ConfirmationStatus,
    ConfirmationType,
    InventorySource,
    OrderPaymentStatus,
    OrderStatus,
)


class OrderItemResponse(BaseModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    price: Decimal
    quantity: int
    subtotal: Decimal


class OrderResponse(BaseModel):
    id: str
    order_number: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
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
    items: list[OrderItemResponse] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, order):
        return cls(
            id=order.id,
            order_number=order.order_number,
            user_id=getattr(order.owner, "user_id", None),
            session_id=getattr(order.owner, "session_id", None),
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
            shipping_address=order.shipping_address,
            billing_address=order.billing_address,
            items=[OrderItemResponse(**item.model_dump(exclude={"order_id"})) for item in order.items],
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class OrderHistoryResponse(BaseModel):
    id: str
    event_type: str
    change_source: str
    previous_value: Optional[dict[str, Any]] = None
    new_value: Optional[dict[str, Any]] = None
    changed_by: Optional[str] = None
    change_reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, event):
        return cls(
            id=event.id,
            event_type=event.event_type.value,
            change_source=event.change_source.value,
            previous_value=event.previous_value,
            new_value=event.new_value,
            changed_by=event.changed_by,
            change_reason=event.change_reason,
            created_at=event.created_at,
        )


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class RecordPaymentRequest(BaseModel):
    order_id: str
    amount: Decimal = Field(gt=0)
    payment_method_code: str
    confirmation_type: ConfirmationType = ConfirmationType.MANUAL
    confirmation_method: ConfirmationMethod = ConfirmationMethod.ADMIN_DASHBOARD


class CreateConfirmationRequest(BaseModel):
    confirmation_type: ConfirmationType
    confirmation_method: ConfirmationMethod = ConfirmationMethod.ADMIN_DASHBOARD
    notes: Optional[str] = None
    evidence: Optional[dict[str, Any]] = None


class ConfirmRequest(BaseModel):
    notes: Optional[str] = None
    evidence: Optional[dict[str, Any]] = None


class RejectRequest(BaseModel):
    reason: str
    evidence: Optional[dict[str, Any]] = None


class CancelConfirmationRequest(BaseModel):
    reason: str


class EvidenceRequest(BaseModel):
    evidence: dict[str, Any]


class AutomateRequest(BaseModel):
    rules: list[AutomationRule]


class BulkConfirmRequest(BaseModel):
    confirmation_ids: list[str] = Field(min_length=1)
    notes: Optional[str] = None


class ConfirmationResponse(BaseModel):
    id: str
    payment_id: str
    confirmation_type: ConfirmationType
    confirmation_method: ConfirmationMethod
    confirmation_status: ConfirmationStatus
    confirmation_notes: Optional[str] = None
    confirmation_evidence: dict[str, Any] = {}
    automation_rules: list[str] = []
    retry_count: int
    next_retry_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    confirmation_history: list[ConfirmationHistoryEntry] = []
    created_at: datetime

    @classmethod
    def from_domain(cls, confirmation):
        return cls(**confirmation.model_dump())


class AutomationResponse(BaseModel):
    automated: bool
    matched_rules: list[str] = []
    notes: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    confirmation: ConfirmationResponse


class BulkConfirmResponse(BaseModel):
    success: bool
    confirmed: list[ConfirmationResponse] = []
    errors: list[dict[str, str]] = []


class StockRequest(BaseModel):
    quantity: int = Field(ge=1)
    order_id: Optional[str] = None
    reason: Optional[str] = None
    source: InventorySource = InventorySource.ORDER


class InventoryResponse(BaseModel):
    product_id: str
    quantity: int
    reserved: int
    available: int
    low_stock_threshold: int
    is_low_stock: bool


class ErrorResponse(BaseModel):
    detail: Any
