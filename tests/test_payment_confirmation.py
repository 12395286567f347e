import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from checkout_core.application.automation import AutomationRule, FixedIntervalRetryPolicy
from checkout_core.application.payment_confirmation import PaymentConfirmationEngine
from checkout_core.domain.exceptions import (
    AlreadyConfirmed,
    ConfirmationNotFound,
    InvalidState,
    NotPending,
    OrderNotFound,
    PaymentNotFound,
)
from checkout_core.domain.models import (
    ConfirmationMethod,
    ConfirmationStatus,
    ConfirmationType,
    OrderEventType,
    OrderPaymentStatus,
    OrderStatus,
    PaymentStatus,
)

from conftest import seed_checkout, seed_inventory, user


NOW = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def notifications():
    sender = AsyncMock()
    sender.send.return_value = True
    return sender


@pytest.fixture
def engine(uow, history, notifications, clock):
    return PaymentConfirmationEngine(
        uow,
        history,
        notifications=notifications,
        retry_policy=FixedIntervalRetryPolicy(timedelta(hours=1)),
        clock=clock,
    )


@pytest.fixture
async def order(uow, ledger, complete_checkout):
    await seed_inventory(uow, ledger, {"A": 10})
    checkout = await seed_checkout(uow, [("A", "25.00", 2)])
    return await complete_checkout(checkout.id, user())


async def pending_confirmation(engine, order, amount="50.00", method="cash"):
    return await engine.record_payment(order.id, Decimal(amount), method)


def cash_rule(**overrides):
    values = {
        "id": "r-cash",
        "name": "Small cash payments",
        "conditions": [
            {"type": "payment_amount", "max_amount": "100"},
            {"type": "payment_method", "method_code": "cash"},
        ],
        "actions": [],
    }
    values.update(overrides)
    return AutomationRule.model_validate(values)


async def test_record_payment_opens_pending_confirmation(uow, engine, order):
    confirmation = await pending_confirmation(engine, order)

    assert confirmation.confirmation_status == ConfirmationStatus.PENDING
    assert confirmation.confirmation_type == ConfirmationType.MANUAL
    assert [h.action for h in confirmation.confirmation_history] == ["created"]

    async with uow() as tx:
        payment = await tx.payments.get_by_id(confirmation.payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.amount == Decimal("50.00")


async def test_record_payment_for_missing_order(engine):
    with pytest.raises(OrderNotFound):
        await engine.record_payment("missing", Decimal("1.00"), "cash")


async def test_create_confirmation_twice_is_rejected(engine, order):
    confirmation = await pending_confirmation(engine, order)

    with pytest.raises(InvalidState):
        await engine.create_payment_confirmation(confirmation.payment_id, ConfirmationType.MANUAL)


async def test_create_confirmation_for_missing_payment(engine):
    with pytest.raises(PaymentNotFound):
        await engine.create_payment_confirmation("missing", ConfirmationType.AUTOMATED)


async def test_confirm_updates_payment_and_order(uow, engine, order):
    confirmation = await pending_confirmation(engine, order)

    confirmed = await engine.confirm_manually(
        confirmation.id, "admin-1", "Cash counted", {"receipt": "R-1"}
    )

    assert confirmed.confirmation_status == ConfirmationStatus.CONFIRMED
    assert confirmed.confirmed_by == "admin-1"
    assert confirmed.confirmed_at == NOW
    assert confirmed.confirmation_evidence == {"receipt": "R-1"}
    assert [h.status for h in confirmed.confirmation_history] == [
        ConfirmationStatus.PENDING,
        ConfirmationStatus.CONFIRMED,
    ]

    async with uow() as tx:
        payment = await tx.payments.get_by_id(confirmation.payment_id)
        stored_order = await tx.orders.get_by_id(order.id)
        events = await tx.order_history.list_for_order(order.id, event_type=OrderEventType.PAYMENT_UPDATED)
    assert payment.status == PaymentStatus.CONFIRMED
    assert stored_order.payment_status == OrderPaymentStatus.PAID
    assert len(events) == 1
    assert events[0].previous_value == {"payment_status": "pending"}
    assert events[0].new_value == {"payment_status": "paid"}
    assert events[0].changed_by == "admin-1"


async def test_confirm_twice_fails_and_keeps_history(engine, order):
    confirmation = await pending_confirmation(engine, order)
    await engine.confirm_manually(confirmation.id, "admin-1")

    with pytest.raises(AlreadyConfirmed):
        await engine.confirm_manually(confirmation.id, "admin-2")

    history = await engine.get_history(confirmation.id)
    assert len(history) == 2
    assert history[-1].actor == "admin-1"


async def test_concurrent_confirmations_only_one_wins(engine, order):
    confirmation = await pending_confirmation(engine, order)

    results = await asyncio.gather(
        engine.confirm_manually(confirmation.id, "admin-1"),
        engine.confirm_manually(confirmation.id, "admin-2"),
        return_exceptions=True,
    )

    assert len([r for r in results if isinstance(r, Exception)]) == 1
    history = await engine.get_history(confirmation.id)
    assert [h.status for h in history].count(ConfirmationStatus.CONFIRMED) == 1


async def test_reject(uow, engine, order):
    confirmation = await pending_confirmation(engine, order)

    rejected = await engine.reject(confirmation.id, "admin-1", "Counterfeit notes")

    assert rejected.confirmation_status == ConfirmationStatus.FAILED
    assert rejected.confirmation_history[-1].notes == "Counterfeit notes"
    async with uow() as tx:
        payment = await tx.payments.get_by_id(confirmation.payment_id)
        stored_order = await tx.orders.get_by_id(order.id)
    assert payment.status == PaymentStatus.REJECTED
    assert payment.admin_notes == "Counterfeit notes"
    assert stored_order.payment_status == OrderPaymentStatus.FAILED


async def test_terminal_states_are_final(engine, order):
    confirmation = await pending_confirmation(engine, order)
    await engine.reject(confirmation.id, "admin-1", "No funds")

    with pytest.raises(NotPending):
        await engine.confirm_manually(confirmation.id, "admin-1")
    with pytest.raises(NotPending):
        await engine.reject(confirmation.id, "admin-1", "again")
    with pytest.raises(NotPending):
        await engine.cancel(confirmation.id, "admin-1", "too late")
    with pytest.raises(NotPending):
        await engine.process_automated(confirmation.id, [cash_rule()])

    history = await engine.get_history(confirmation.id)
    assert len(history) == 2


async def test_cancel(uow, engine, order):
    confirmation = await pending_confirmation(engine, order)

    cancelled = await engine.cancel(confirmation.id, "admin-1", "Customer changed mind")

    assert cancelled.confirmation_status == ConfirmationStatus.CANCELLED
    async with uow() as tx:
        payment = await tx.payments.get_by_id(confirmation.payment_id)
    assert payment.status == PaymentStatus.CANCELLED


async def test_cancel_confirmed_is_rejected(engine, order):
    confirmation = await pending_confirmation(engine, order)
    await engine.confirm_manually(confirmation.id, "admin-1")

    with pytest.raises(AlreadyConfirmed):
        await engine.cancel(confirmation.id, "admin-1", "oops")


async def test_unknown_confirmation(engine):
    with pytest.raises(ConfirmationNotFound):
        await engine.confirm_manually("missing", "admin-1")


async def test_automation_confirms_small_cash_payment(uow, engine, order, notifications):
    confirmation = await pending_confirmation(engine, order)
    rule = cash_rule(actions=[
        {"type": "send_notification", "recipient": "finance@example.com"},
        {"type": "update_order_status", "status": "confirmed"},
        {"type": "add_order_note", "note": "Auto-approved cash"},
    ])

    outcome = await engine.process_automated(confirmation.id, [rule])

    assert outcome.automated is True
    assert outcome.matched_rules == ["Small cash payments"]
    confirmed = outcome.confirmation
    assert confirmed.confirmation_status == ConfirmationStatus.CONFIRMED
    assert confirmed.confirmed_by == "system"
    assert confirmed.automation_rules == ["Small cash payments"]
    assert "Small cash payments" in confirmed.confirmation_notes
    assert confirmed.confirmation_history[-1].action == "automated_confirmation"

    notifications.send.assert_awaited_once()
    assert notifications.send.await_args.args[0] == "finance@example.com"

    async with uow() as tx:
        stored_order = await tx.orders.get_by_id(order.id)
        notes = await tx.order_history.list_for_order(order.id, event_type=OrderEventType.NOTE_ADDED)
    assert stored_order.status == OrderStatus.CONFIRMED
    assert stored_order.payment_status == OrderPaymentStatus.PAID
    assert notes[0].new_value == {"note": "Auto-approved cash"}


async def test_automation_runs_only_first_matching_rule_actions(uow, engine, order, notifications):
    confirmation = await pending_confirmation(engine, order)
    first = cash_rule(actions=[{"type": "add_order_note", "note": "first"}])
    second = cash_rule(id="r-any", name="Anything", conditions=[], actions=[
        {"type": "add_order_note", "note": "second"},
    ])

    outcome = await engine.process_automated(confirmation.id, [first, second])

    assert outcome.matched_rules == ["Small cash payments", "Anything"]
    async with uow() as tx:
        notes = await tx.order_history.list_for_order(order.id, event_type=OrderEventType.NOTE_ADDED)
    assert [n.new_value["note"] for n in notes] == ["first"]


async def test_automation_without_match_schedules_retry(engine, order, notifications):
    confirmation = await pending_confirmation(engine, order, amount="500.00")

    outcome = await engine.process_automated(confirmation.id, [cash_rule()])

    assert outcome.automated is False
    pending = outcome.confirmation
    assert pending.confirmation_status == ConfirmationStatus.PENDING
    assert pending.retry_count == 1
    assert pending.next_retry_at == NOW + timedelta(hours=1)
    assert pending.confirmation_history[-1].notes == "Automated processing - no rules triggered"
    notifications.send.assert_not_awaited()


async def test_disabled_rules_are_ignored(engine, order):
    confirmation = await pending_confirmation(engine, order)

    outcome = await engine.process_automated(confirmation.id, [cash_rule(enabled=False)])

    assert outcome.automated is False


async def test_notification_failure_does_not_undo_confirmation(engine, order, notifications):
    notifications.send.side_effect = RuntimeError("smtp down")
    confirmation = await pending_confirmation(engine, order)
    rule = cash_rule(actions=[{"type": "send_notification", "recipient": "finance@example.com"}])

    outcome = await engine.process_automated(confirmation.id, [rule])

    assert outcome.automated is True
    stored = await engine.get_confirmation(confirmation.id)
    assert stored.confirmation_status == ConfirmationStatus.CONFIRMED


async def test_retry_query_returns_due_confirmations_earliest_first(uow, ledger, complete_checkout, engine, clock):
    await seed_inventory(uow, ledger, {"B": 10})
    orders = []
    for _ in range(3):
        checkout = await seed_checkout(uow, [("B", "400.00", 1)])
        orders.append(await complete_checkout(checkout.id, user()))

    late = await pending_confirmation(engine, orders[0], amount="400.00")
    early = await pending_confirmation(engine, orders[1], amount="400.00")
    not_due = await pending_confirmation(engine, orders[2], amount="400.00")

    clock.now = NOW + timedelta(minutes=10)
    await engine.process_automated(late.id, [cash_rule()])
    clock.now = NOW
    await engine.process_automated(early.id, [cash_rule()])
    clock.now = NOW + timedelta(hours=5)
    await engine.process_automated(not_due.id, [cash_rule()])

    clock.now = NOW + timedelta(hours=2)
    due = await engine.confirmations_requiring_retry()

    assert [c.id for c in due] == [early.id, late.id]


async def test_bulk_confirm_reports_partial_failure(engine, uow, ledger, complete_checkout):
    await seed_inventory(uow, ledger, {"C": 10})
    confirmations = []
    for _ in range(3):
        checkout = await seed_checkout(uow, [("C", "10.00", 1)])
        placed = await complete_checkout(checkout.id, user())
        confirmations.append(await pending_confirmation(engine, placed, amount="10.00"))
    await engine.reject(confirmations[1].id, "admin-1", "bounced")

    result = await engine.bulk_confirm([c.id for c in confirmations] + ["missing"], "admin-1", "batch")

    assert result.success is False
    assert [c.id for c in result.confirmed] == [confirmations[0].id, confirmations[2].id]
    assert [e.confirmation_id for e in result.errors] == [confirmations[1].id, "missing"]


async def test_update_evidence_merges(engine, order):
    confirmation = await pending_confirmation(engine, order)

    await engine.update_evidence(confirmation.id, {"receipt": "R-1"}, "admin-1")
    updated = await engine.update_evidence(confirmation.id, {"photo": "p.jpg"}, "admin-1")

    assert updated.confirmation_evidence == {"receipt": "R-1", "photo": "p.jpg"}
    assert updated.confirmation_history[-1].action == "evidence_updated"


async def test_stats_and_listing(engine, order):
    confirmation = await pending_confirmation(engine, order)

    stats = await engine.stats()
    assert stats["pending"] == 1
    assert stats["total"] == 1

    await engine.confirm_manually(confirmation.id, "admin-1")
    assert [c.id for c in await engine.list_by_status(ConfirmationStatus.CONFIRMED)] == [confirmation.id]
    assert await engine.list_by_status(ConfirmationStatus.PENDING) == []


async def test_confirmation_method_is_kept(engine, order):
    confirmation = await engine.record_payment(
        order.id, Decimal("50.00"), "bank_transfer",
        ConfirmationType.AUTOMATED, ConfirmationMethod.WEBHOOK,
    )
    stored = await engine.get_confirmation(confirmation.id)
    assert stored.confirmation_method == ConfirmationMethod.WEBHOOK
    assert stored.confirmation_type == ConfirmationType.AUTOMATED


async def dumps(engine, confirmation_id):
    return [h.model_dump() for h in await engine.get_history(confirmation_id)]


async def order_events(uow, order_id):
    async with uow() as tx:
        return [e.model_dump() for e in await tx.order_history.list_for_order(order_id)]


async def test_earlier_history_entries_never_change(uow, engine, order, clock):
    confirmation = await pending_confirmation(engine, order)
    seen = await dumps(engine, confirmation.id)
    seen_events = await order_events(uow, order.id)

    steps = [
        lambda: engine.update_evidence(confirmation.id, {"receipt": "R-1"}, "admin-1"),
        lambda: engine.process_automated(confirmation.id, [cash_rule(conditions=[
            {"type": "payment_method", "method_code": "card"},
        ])]),
        lambda: engine.confirm_manually(confirmation.id, "admin-1", "Counted"),
    ]
    for step in steps:
        clock.now += timedelta(minutes=5)
        await step()
        current = await dumps(engine, confirmation.id)
        assert len(current) == len(seen) + 1
        assert current[:len(seen)] == seen
        seen = current

        events = await order_events(uow, order.id)
        assert events[:len(seen_events)] == seen_events
        seen_events = events

    # failed operations append nothing and rewrite nothing
    with pytest.raises(AlreadyConfirmed):
        await engine.confirm_manually(confirmation.id, "admin-2")
    with pytest.raises(NotPending):
        await engine.update_evidence(confirmation.id, {"late": True}, "admin-2")
    assert await dumps(engine, confirmation.id) == seen
    assert await order_events(uow, order.id) == seen_events


async def test_reject_keeps_earlier_history_entries(uow, engine, order, clock):
    confirmation = await pending_confirmation(engine, order)
    await engine.update_evidence(confirmation.id, {"receipt": "R-1"}, "admin-1")
    seen = await dumps(engine, confirmation.id)
    seen_events = await order_events(uow, order.id)

    clock.now += timedelta(minutes=5)
    await engine.reject(confirmation.id, "admin-1", "Counterfeit notes")

    current = await dumps(engine, confirmation.id)
    assert current[:len(seen)] == seen
    assert current[-1]["status"] == ConfirmationStatus.FAILED
    events = await order_events(uow, order.id)
    assert events[:len(seen_events)] == seen_events
    assert len(events) == len(seen_events) + 1

    with pytest.raises(NotPending):
        await engine.cancel(confirmation.id, "admin-1", "too late")
    assert await dumps(engine, confirmation.id) == current
