"""Storefront repository: durable order storage on async SQLAlchemy.

OrderRepository adds order queries to BaseRepository. SqlOrderStore wraps
it behind the OrderStore protocol so OrderAssembly can run against a real
database instead of the in-memory store.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import session_scope
from patterns.repository import BaseRepository
from verticals.storefront.errors import NotFound
from verticals.storefront.models.db_models import OrderRecord
from verticals.storefront.orders import Order, OrderStatus


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _columns(order: Order) -> dict[str, Any]:
    return {
        "order_number": order.order_number,
        "user_id": order.user_id,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "total": str(order.pricing.total),
        "currency": order.pricing.currency,
        "placed_at": _utc(order.created_at),
        "payload": order.to_dict(),
    }


# ---------------------------------------------------------------------------
# Order repository
# ---------------------------------------------------------------------------

class OrderRepository(BaseRepository[OrderRecord]):
    """Repository for order persistence and lookups."""

    model = OrderRecord

    async def get_by_number(self, order_number: str) -> OrderRecord | None:
        stmt = select(OrderRecord).where(OrderRecord.order_number == order_number)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[OrderRecord]:
        stmt = (
            select(OrderRecord)
            .where(OrderRecord.user_id == user_id)
            .order_by(OrderRecord.placed_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_pending_before(self, cutoff: datetime) -> list[OrderRecord]:
        stmt = select(OrderRecord).where(
            OrderRecord.status == OrderStatus.PENDING.value,
            OrderRecord.placed_at < _utc(cutoff),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def save_order(self, order: Order) -> OrderRecord:
        """Insert or update the row for `order`."""
        record = await self.update(order.id, _columns(order))
        if record is None:
            record = await self.create({"id": uuid.UUID(order.id), **_columns(order)})
        return record


# ---------------------------------------------------------------------------
# OrderStore implementation
# ---------------------------------------------------------------------------

class SqlOrderStore:
    """OrderStore backed by the orders table.

    Usage::

        engine = create_engine_for("sqlite+aiosqlite:///./orders.db")
        await init_db(engine)
        store = SqlOrderStore(build_session_factory(engine))
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self.session_factory = session_factory

    async def save(self, order: Order) -> Order:
        async with session_scope(self.session_factory) as session:
            await OrderRepository(session).save_order(order)
        return order

    async def get(self, order_id: str) -> Order:
        async with session_scope(self.session_factory) as session:
            record = await OrderRepository(session).get(order_id)
        if record is None:
            raise NotFound(f"Order {order_id} not found", {"order_id": order_id})
        return Order.from_dict(record.payload)

    async def get_by_number(self, order_number: str) -> Order | None:
        async with session_scope(self.session_factory) as session:
            record = await OrderRepository(session).get_by_number(order_number)
        return Order.from_dict(record.payload) if record else None

    async def list_for_user(self, user_id: str) -> list[Order]:
        async with session_scope(self.session_factory) as session:
            records = await OrderRepository(session).list_for_user(user_id)
        return [Order.from_dict(r.payload) for r in records]

    async def list_pending_before(self, cutoff: datetime) -> list[Order]:
        async with session_scope(self.session_factory) as session:
            records = await OrderRepository(session).list_pending_before(cutoff)
        return [Order.from_dict(r.payload) for r in records]
