from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_core.infrastructure.repositories import (
    SQLAlchemyAddressRepository,
    SQLAlchemyCartRepository,
    SQLAlchemyCheckoutRepository,
    SQLAlchemyInventoryRepository,
    SQLAlchemyOrderHistoryRepository,
    SQLAlchemyOrderRepository,
    SQLAlchemyPaymentConfirmationRepository,
    SQLAlchemyPaymentRepository,
)


class UnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                uow_impl = _UnitOfWorkImpl(session)
                yield uow_impl
                # nothing is kept unless commit() was called
                await session.rollback()
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImpl:
    def __init__(self, session: AsyncSession):
        self._session = session
        self.checkouts = SQLAlchemyCheckoutRepository(session)
        self.addresses = SQLAlchemyAddressRepository(session)
        self.carts = SQLAlchemyCartRepository(session)
        self.orders = SQLAlchemyOrderRepository(session)
        self.inventory = SQLAlchemyInventoryRepository(session)
        self.payments = SQLAlchemyPaymentRepository(session)
        self.confirmations = SQLAlchemyPaymentConfirmationRepository(session)
        self.order_history = SQLAlchemyOrderHistoryRepository(session)

    async def commit(self):
        await self._session.commit()

    async def rollback(self):
        await self._session.rollback()
