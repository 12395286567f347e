from sqlalchemy import (
    Table, Column, String, Integer, Numeric, Boolean, DateTime, JSON, MetaData, ForeignKey, Enum, Index,
)
from sqlalchemy.sql import func

from checkout_core.domain.models import (
    CheckoutStatus,
    ConfirmationMethod,
    ConfirmationStatus,
    ConfirmationType,
    OrderPaymentStatus,
    OrderStatus,
    PaymentStatus,
)

metadata = MetaData()

MONEY = Numeric(12, 2)


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e], native_enum=False)


addresses_tbl = Table(
    "addresses",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=True, index=True),
    Column("session_id", String, nullable=True, index=True),
    Column("first_name", String, nullable=False),
    Column("last_name", String, nullable=False),
    Column("line1", String, nullable=False),
    Column("line2", String, nullable=True),
    Column("city", String, nullable=False),
    Column("state", String, nullable=True),
    Column("postal_code", String, nullable=False),
    Column("country", String, nullable=False),
    Column("phone", String, nullable=True),
)


carts_tbl = Table(
    "carts",
    metadata,
    Column("id", String, primary_key=True),
    Column("subtotal", MONEY, nullable=False, default=0),
    Column("tax", MONEY, nullable=False, default=0),
    Column("shipping", MONEY, nullable=False, default=0),
    Column("total", MONEY, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
)


cart_items_tbl = Table(
    "cart_items",
    metadata,
    Column("id", String, primary_key=True),
    Column("cart_id", String, ForeignKey("carts.id"), nullable=False, index=True),
    Column("product_id", String, nullable=False),
    Column("variant_id", String, nullable=True),
    Column("price", MONEY, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("deleted_at", DateTime(timezone=True), nullable=True),
)


checkouts_tbl = Table(
    "checkouts",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=True, index=True),
    Column("session_id", String, nullable=True, index=True),
    Column("cart_id", String, ForeignKey("carts.id"), nullable=False),
    Column("cart_item_ids", JSON, nullable=False),
    Column("shipping_address_id", String, ForeignKey("addresses.id"), nullable=True),
    Column("billing_address_id", String, ForeignKey("addresses.id"), nullable=True),
    Column("payment_method_id", String, nullable=True),
    Column("shipping_method", String, nullable=True),
    Column("status", _enum(CheckoutStatus, "checkout_status"), nullable=False, default=CheckoutStatus.ACTIVE),
    Column("expires_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
)


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_number", String, unique=True, nullable=False, index=True),
    Column("user_id", String, nullable=True, index=True),
    Column("session_id", String, nullable=True, index=True),
    Column("checkout_id", String, ForeignKey("checkouts.id"), nullable=True, index=True),
    Column("status", _enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING),
    Column("payment_status", _enum(OrderPaymentStatus, "order_payment_status"), nullable=False),
    Column("subtotal", MONEY, nullable=False),
    Column("tax", MONEY, nullable=False),
    Column("shipping", MONEY, nullable=False),
    Column("discount", MONEY, nullable=False),
    Column("total", MONEY, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("shipping_method", String, nullable=True),
    Column("shipping_address", JSON, nullable=True),
    Column("billing_address", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


order_items_tbl = Table(
    "order_items",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String, nullable=False),
    Column("variant_id", String, nullable=True),
    Column("price", MONEY, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("subtotal", MONEY, nullable=False),
)


inventory_tbl = Table(
    "inventory",
    metadata,
    Column("id", String, primary_key=True),
    Column("product_id", String, unique=True, nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("reserved", Integer, nullable=False, default=0),
    Column("available", Integer, nullable=False),
    Column("low_stock_threshold", Integer, nullable=False),
    Column("is_low_stock", Boolean, nullable=False, default=False),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
)


inventory_history_tbl = Table(
    "inventory_history",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String, unique=True, nullable=False),
    Column("product_id", String, nullable=False, index=True),
    Column("action", String, nullable=False),
    Column("quantity_before", Integer, nullable=False),
    Column("quantity_after", Integer, nullable=False),
    Column("quantity_changed", Integer, nullable=False),
    Column("reserved_before", Integer, nullable=False),
    Column("reserved_after", Integer, nullable=False),
    Column("reason", String, nullable=False),
    Column("source", String, nullable=False),
    Column("order_id", String, nullable=True, index=True),
    Column("changed_by", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


payments_tbl = Table(
    "payments",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("amount", MONEY, nullable=False),
    Column("payment_method_code", String, nullable=False),
    Column("status", _enum(PaymentStatus, "payment_status"), nullable=False),
    Column("admin_notes", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
)


payment_confirmations_tbl = Table(
    "payment_confirmations",
    metadata,
    Column("id", String, primary_key=True),
    Column("payment_id", String, ForeignKey("payments.id"), unique=True, nullable=False),
    Column("confirmation_type", _enum(ConfirmationType, "confirmation_type"), nullable=False),
    Column("confirmation_method", _enum(ConfirmationMethod, "confirmation_method"), nullable=False),
    Column("confirmation_status", _enum(ConfirmationStatus, "confirmation_status"), nullable=False),
    Column("confirmation_notes", String, nullable=True),
    Column("confirmation_evidence", JSON, nullable=False),
    Column("automation_rules", JSON, nullable=False),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("next_retry_at", DateTime(timezone=True), nullable=True),
    Column("confirmed_at", DateTime(timezone=True), nullable=True),
    Column("confirmed_by", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_confirmations_retry", "confirmation_status", "next_retry_at"),
)


confirmation_history_tbl = Table(
    "payment_confirmation_history",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("confirmation_id", String, ForeignKey("payment_confirmations.id"), nullable=False, index=True),
    Column("status", String, nullable=False),
    Column("action", String, nullable=False),
    Column("actor", String, nullable=True),
    Column("notes", String, nullable=True),
    Column("timestamp", DateTime(timezone=True), nullable=False),
)


order_history_tbl = Table(
    "order_history",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String, unique=True, nullable=False),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("event_type", String, nullable=False),
    Column("change_source", String, nullable=False),
    Column("previous_value", JSON, nullable=True),
    Column("new_value", JSON, nullable=True),
    Column("changed_by", String, nullable=True),
    Column("change_reason", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
