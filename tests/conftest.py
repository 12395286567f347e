import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from checkout_core.database import create_engine, create_session_factory, create_tables
from checkout_core.application.create_order import CompleteCheckoutUseCase, CreateOrderFromCheckoutUseCase
from checkout_core.application.inventory import InventoryLedger
from checkout_core.application.order_history import OrderHistoryRecorder
from checkout_core.application.order_number import OrderNumberGenerator
from checkout_core.domain.models import (
    Address,
    AuthenticatedOwner,
    Cart,
    CartItem,
    CheckoutSession,
    CheckoutStatus,
    OwnerType,
    Requester,
)
from checkout_core.infrastructure.unit_of_work import UnitOfWork


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def uow(session_factory):
    return UnitOfWork(session_factory)


@pytest.fixture
def ledger():
    return InventoryLedger(low_stock_threshold=2)


@pytest.fixture
def history():
    return OrderHistoryRecorder()


@pytest.fixture
def complete_checkout(uow, ledger, history):
    create_order = CreateOrderFromCheckoutUseCase(OrderNumberGenerator(), ledger, history)
    return CompleteCheckoutUseCase(uow, create_order)


def user(user_id="user-1"):
    return Requester(owner_id=user_id, owner_type=OwnerType.AUTHENTICATED)


def guest(session_id="sess-1"):
    return Requester(owner_id=session_id, owner_type=OwnerType.GUEST)


def admin(admin_id="admin-1"):
    return Requester(owner_id=admin_id, owner_type=OwnerType.ADMIN)


def make_address(**overrides):
    values = dict(
        first_name="Ada",
        last_name="Lovelace",
        line1="12 Analytical Row",
        city="London",
        postal_code="N1 9GU",
        country="GB",
    )
    values.update(overrides)
    return Address(**values)


async def seed_inventory(uow, ledger, stock: dict[str, int]):
    async with uow() as tx:
        for product_id, quantity in stock.items():
            await ledger.initialize(tx, product_id, quantity)
        await tx.commit()


async def seed_checkout(
    uow,
    lines,
    owner=None,
    status=CheckoutStatus.ACTIVE,
    with_addresses=True,
    shipping_method="standard",
    expires_at=None,
) -> CheckoutSession:
    """Create a cart, its items and a checkout over them.

    `lines` is a list of (product_id, price, quantity).
    """
    owner = owner or AuthenticatedOwner(user_id="user-1")
    cart_id = str(uuid.uuid4())
    item_ids = []

    async with uow() as tx:
        await tx.carts.create(Cart(id=cart_id))
        for product_id, price, quantity in lines:
            item_id = str(uuid.uuid4())
            await tx.carts.add_item(
                CartItem(
                    id=item_id,
                    cart_id=cart_id,
                    product_id=product_id,
                    price=Decimal(str(price)),
                    quantity=quantity,
                )
            )
            item_ids.append(item_id)

        shipping_id = billing_id = None
        if with_addresses:
            shipping_id = str(uuid.uuid4())
            billing_id = str(uuid.uuid4())
            await tx.addresses.create(shipping_id, owner, make_address())
            await tx.addresses.create(billing_id, owner, make_address(line1="1 Billing Way"))

        checkout = CheckoutSession(
            id=str(uuid.uuid4()),
            owner=owner,
            cart_id=cart_id,
            cart_item_ids=item_ids,
            shipping_address_id=shipping_id,
            billing_address_id=billing_id,
            shipping_method=shipping_method,
            status=status,
            expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=1),
        )
        await tx.checkouts.create(checkout)
        await tx.commit()
    return checkout
