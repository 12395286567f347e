import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from checkout_core.domain.models import AuthenticatedOwner, Order, OrderStatus, Payment


logger = logging.getLogger(__name__)

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.RETURNED})


class AutomationContext(BaseModel):
    """Facts a rule is evaluated against"""
    payment: Payment
    order: Order
    now: datetime

    @property
    def is_registered(self) -> bool:
        return isinstance(self.order.owner, AuthenticatedOwner)


class PaymentAmountCondition(BaseModel):
    type: Literal["payment_amount"] = "payment_amount"
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    def holds(self, ctx: AutomationContext) -> bool:
        amount = ctx.payment.amount
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True


class PaymentMethodCondition(BaseModel):
    type: Literal["payment_method"] = "payment_method"
    method_code: str

    def holds(self, ctx: AutomationContext) -> bool:
        return ctx.payment.payment_method_code == self.method_code


class UserTypeCondition(BaseModel):
    type: Literal["user_type"] = "user_type"
    require_registered: bool = True

    def holds(self, ctx: AutomationContext) -> bool:
        return ctx.is_registered or not self.require_registered


class OrderValueCondition(BaseModel):
    type: Literal["order_value"] = "order_value"
    min_order_value: Decimal

    def holds(self, ctx: AutomationContext) -> bool:
        return ctx.order.total >= self.min_order_value


class TimeOfDayCondition(BaseModel):
    """Inclusive UTC hour window, e.g. 9..17.

    A window whose start is after its end wraps past midnight: 22..6 holds
    from 22:00 through 06:59.
    """
    type: Literal["time_of_day"] = "time_of_day"
    start_hour: int = Field(ge=0, le=23)
    end_hour: int = Field(ge=0, le=23)

    def holds(self, ctx: AutomationContext) -> bool:
        hour = ctx.now.astimezone(timezone.utc).hour
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour <= self.end_hour
        return hour >= self.start_hour or hour <= self.end_hour


Condition = Annotated[
    Union[
        PaymentAmountCondition,
        PaymentMethodCondition,
        UserTypeCondition,
        OrderValueCondition,
        TimeOfDayCondition,
    ],
    Field(discriminator="type"),
]


class SendNotificationAction(BaseModel):
    type: Literal["send_notification"] = "send_notification"
    recipient: str
    message: Optional[str] = None


class UpdateOrderStatusAction(BaseModel):
    """Move the order forward in fulfilment.

    Statuses that end the order are refused here: they must go through
    order cancellation, which hands the reserved stock back.
    """
    type: Literal["update_order_status"] = "update_order_status"
    status: OrderStatus

    @field_validator("status")
    @classmethod
    def _not_terminal(cls, status: OrderStatus) -> OrderStatus:
        if status in TERMINAL_ORDER_STATUSES:
            raise ValueError(f"Automation cannot set order status to '{status.value}'")
        return status


class AddOrderNoteAction(BaseModel):
    type: Literal["add_order_note"] = "add_order_note"
    note: str


Action = Annotated[
    Union[SendNotificationAction, UpdateOrderStatusAction, AddOrderNoteAction],
    Field(discriminator="type"),
]


class AutomationRule(BaseModel):
    id: str
    name: str
    enabled: bool = True
    conditions: list[Condition] = []
    actions: list[Action] = []

    def matches(self, ctx: AutomationContext) -> bool:
        """All conditions must hold."""
        return all(condition.holds(ctx) for condition in self.conditions)


_rules_adapter = TypeAdapter(list[AutomationRule])


def load_rules(path: str) -> list[AutomationRule]:
    """Read a JSON array of rules. Unknown condition or action types fail validation."""
    with open(path, "rb") as f:
        return _rules_adapter.validate_json(f.read())


def matching_rules(rules: list[AutomationRule], ctx: AutomationContext) -> list[AutomationRule]:
    matched = []
    for rule in rules:
        if not rule.enabled:
            continue
        if rule.matches(ctx):
            logger.info(f"Automation rule {rule.name} matched payment {ctx.payment.id}")
            matched.append(rule)
    return matched


class RetryPolicy(ABC):
    @abstractmethod
    def next_retry_at(self, now: datetime, retry_count: int) -> datetime:
        pass


class FixedIntervalRetryPolicy(RetryPolicy):
    def __init__(self, interval: timedelta = timedelta(hours=1)):
        self._interval = interval

    def next_retry_at(self, now: datetime, retry_count: int) -> datetime:
        return now + self._interval
