import asyncio
import random
import re

import pytest

from checkout_core.application.order_number import OrderNumberGenerator
from checkout_core.application.create_order import CompleteCheckoutUseCase, CreateOrderFromCheckoutUseCase
from checkout_core.domain.exceptions import GenerationExhausted
from checkout_core.domain.models import AuthenticatedOwner

from conftest import seed_checkout, seed_inventory, user


class FakeOrders:
    def __init__(self, taken=(), always_taken=False):
        self.taken = set(taken)
        self.always_taken = always_taken
        self.checked = []

    async def exists_with_number(self, order_number):
        self.checked.append(order_number)
        return self.always_taken or order_number in self.taken


def test_candidate_format():
    generator = OrderNumberGenerator(clock_ms=lambda: 1712345678901)
    number = generator.candidate()
    assert re.fullmatch(r"ORD45678901[0-9A-Z]{4}", number)


def test_custom_prefix():
    generator = OrderNumberGenerator(prefix="WEB-")
    assert generator.candidate().startswith("WEB-")


async def test_generate_returns_unused_number():
    orders = FakeOrders()
    number = await OrderNumberGenerator().generate(orders)
    assert orders.checked == [number]


async def test_generate_retries_on_collision():
    rng = random.Random(7)
    first = OrderNumberGenerator(rng=random.Random(7), clock_ms=lambda: 1000).candidate()
    orders = FakeOrders(taken={first})

    number = await OrderNumberGenerator(rng=rng, clock_ms=lambda: 1000).generate(orders)

    assert number != first
    assert orders.checked[0] == first
    assert len(orders.checked) == 2


async def test_generate_gives_up_after_max_attempts():
    orders = FakeOrders(always_taken=True)
    with pytest.raises(GenerationExhausted) as exc:
        await OrderNumberGenerator(max_attempts=3).generate(orders)
    assert exc.value.attempts == 3
    assert len(orders.checked) == 3


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        OrderNumberGenerator(max_attempts=0)


async def test_concurrent_orders_get_unique_numbers(uow, ledger, history):
    # same millisecond for every order, so only the random suffix tells them apart
    generator = OrderNumberGenerator(clock_ms=lambda: 1712345678901)
    complete = CompleteCheckoutUseCase(uow, CreateOrderFromCheckoutUseCase(generator, ledger, history))
    await seed_inventory(uow, ledger, {"A": 50})
    checkouts = []
    for i in range(8):
        owner = AuthenticatedOwner(user_id=f"user-{i}")
        checkouts.append(await seed_checkout(uow, [("A", "1.00", 1)], owner=owner))

    orders = await asyncio.gather(
        *(complete(c.id, user(f"user-{i}")) for i, c in enumerate(checkouts))
    )

    numbers = [o.order_number for o in orders]
    assert len(set(numbers)) == 8
    async with uow() as tx:
        for number in numbers:
            assert await tx.orders.exists_with_number(number)
