"""Read-only order queries for the owning user."""
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from redcart.core.errors import NotFoundError
from redcart.database.connection import get_session_factory
from redcart.database.models import Order, OrderItem


class OrderQueries:
    """Loads orders with their items and payment. Never writes."""

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        self.session_factory = session_factory or get_session_factory()

    async def list_orders(self, user_id: str) -> List[Order]:
        """Newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(Order.user_id == user_id)
                .options(
                    selectinload(Order.items).selectinload(OrderItem.product),
                    selectinload(Order.payment),
                )
                .order_by(Order.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_order(self, order_id: str, user_id: str) -> Order:
        """
        Load one of the user's orders with its payment.

        Raises:
            NotFoundError: If the order is missing or belongs to someone else
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(Order.id == order_id, Order.user_id == user_id)
                .options(selectinload(Order.payment))
            )
            order = result.scalar_one_or_none()

        if order is None:
            raise NotFoundError("Order not found")
        return order
