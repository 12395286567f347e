import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from checkout_core.application.automation import (
    AutomationContext,
    AutomationRule,
    FixedIntervalRetryPolicy,
    load_rules,
    matching_rules,
)
from checkout_core.domain.models import (
    AuthenticatedOwner,
    GuestOwner,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentStatus,
)


def context(amount="50.00", method="cash", owner=None, total="50.00", hour=10):
    now = datetime(2026, 3, 2, hour, 0, tzinfo=timezone.utc)
    order = Order(
        id="o-1",
        order_number="ORD1",
        owner=owner or AuthenticatedOwner(user_id="user-1"),
        status=OrderStatus.PENDING,
        payment_status=OrderPaymentStatus.PENDING,
        subtotal=Decimal(total),
        tax=Decimal("0"),
        shipping=Decimal("0"),
        discount=Decimal("0"),
        total=Decimal(total),
        currency="USD",
        created_at=now,
        updated_at=now,
    )
    payment = Payment(
        id="p-1",
        order_id="o-1",
        amount=Decimal(amount),
        payment_method_code=method,
        status=PaymentStatus.PENDING,
        created_at=now,
    )
    return AutomationContext(payment=payment, order=order, now=now)


def rule(*conditions, **extra):
    return AutomationRule.model_validate({"id": "r", "name": "rule", "conditions": list(conditions), **extra})


@pytest.mark.parametrize("amount, expected", [("10", True), ("100", True), ("100.01", False), ("4.99", False)])
def test_payment_amount_bounds(amount, expected):
    r = rule({"type": "payment_amount", "min_amount": "5", "max_amount": "100"})
    assert r.matches(context(amount=amount)) is expected


def test_payment_method():
    r = rule({"type": "payment_method", "method_code": "cash"})
    assert r.matches(context(method="cash"))
    assert not r.matches(context(method="card"))


def test_user_type_requires_registered_owner():
    r = rule({"type": "user_type", "require_registered": True})
    assert r.matches(context())
    assert not r.matches(context(owner=GuestOwner(session_id="s")))


def test_order_value():
    r = rule({"type": "order_value", "min_order_value": "100"})
    assert r.matches(context(total="150.00"))
    assert not r.matches(context(total="99.99"))


@pytest.mark.parametrize("hour, expected", [(8, False), (9, True), (17, True), (18, False)])
def test_time_of_day_window_is_inclusive(hour, expected):
    r = rule({"type": "time_of_day", "start_hour": 9, "end_hour": 17})
    assert r.matches(context(hour=hour)) is expected


def test_all_conditions_must_hold():
    r = rule(
        {"type": "payment_amount", "max_amount": "100"},
        {"type": "payment_method", "method_code": "cash"},
    )
    assert r.matches(context(amount="50", method="cash"))
    assert not r.matches(context(amount="500", method="cash"))
    assert not r.matches(context(amount="50", method="card"))


def test_matching_rules_skips_disabled():
    enabled = rule(name="on")
    disabled = rule(name="off", enabled=False)
    assert [r.name for r in matching_rules([disabled, enabled], context())] == ["on"]


def test_unknown_condition_type_is_rejected():
    with pytest.raises(ValidationError):
        rule({"type": "moon_phase", "phase": "full"})


def test_fixed_interval_retry_policy():
    now = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
    policy = FixedIntervalRetryPolicy(timedelta(minutes=30))
    assert policy.next_retry_at(now, 1) == now + timedelta(minutes=30)
    assert policy.next_retry_at(now, 5) == now + timedelta(minutes=30)


def test_load_rules_from_file(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps([
        {
            "id": "r-1",
            "name": "Small cash",
            "conditions": [{"type": "payment_method", "method_code": "cash"}],
            "actions": [{"type": "send_notification", "recipient": "ops@example.com"}],
        }
    ]))

    rules = load_rules(str(path))

    assert [r.name for r in rules] == ["Small cash"]
    assert rules[0].actions[0].recipient == "ops@example.com"


@pytest.mark.parametrize("hour, expected", [(21, False), (22, True), (23, True), (0, True), (6, True), (7, False)])
def test_time_of_day_window_wraps_past_midnight(hour, expected):
    r = rule({"type": "time_of_day", "start_hour": 22, "end_hour": 6})
    assert r.matches(context(hour=hour)) is expected


def test_time_of_day_reads_utc_hour():
    r = rule({"type": "time_of_day", "start_hour": 9, "end_hour": 9})
    ctx = context(hour=9)
    ctx.now = ctx.now.astimezone(timezone(timedelta(hours=5)))
    assert r.matches(ctx)


@pytest.mark.parametrize("status", ["cancelled", "refunded", "returned"])
def test_update_order_status_refuses_terminal_statuses(status):
    with pytest.raises(ValidationError):
        AutomationRule.model_validate({
            "id": "r",
            "name": "rule",
            "actions": [{"type": "update_order_status", "status": status}],
        })


def test_update_order_status_accepts_fulfilment_statuses():
    r = AutomationRule.model_validate({
        "id": "r",
        "name": "rule",
        "actions": [{"type": "update_order_status", "status": "processing"}],
    })
    assert r.actions[0].status == OrderStatus.PROCESSING
