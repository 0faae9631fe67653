"""Async repository pattern for database access.

Provides a generic base repository with get, create and update.
Concrete repositories subclass this to add domain-specific queries.

Example: OrderRepository extending BaseRepository.
"""

from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from core.models.base import Base

# ---------------------------------------------------------------------------
# Type variable for model classes
# ---------------------------------------------------------------------------

ModelT = TypeVar("ModelT", bound=Base)


# ---------------------------------------------------------------------------
# Base repository
# ---------------------------------------------------------------------------

class BaseRepository(Generic[ModelT]):
    """Generic async repository with get, create and update.

    Subclass and set `model` to your SQLAlchemy model::

        class OrderRepository(BaseRepository[OrderRecord]):
            model = OrderRecord

            async def get_by_number(self, order_number: str):
                stmt = select(self.model).where(self.model.order_number == order_number)
                result = await self.session.execute(stmt)
                return result.scalar_one_or_none()
    """

    model: type[ModelT]

    def __init__(self, session: AsyncSession):
        self.session = session

    # -- Get by ID --

    async def get(self, item_id: str | UUID) -> ModelT | None:
        """Get a single row by primary key."""
        return await self.session.get(self.model, _as_uuid(item_id))

    # -- Create --

    async def create(self, data: dict[str, Any]) -> ModelT:
        """Create a new row."""
        item = self.model(**data)
        self.session.add(item)
        await self.session.flush()
        return item

    # -- Update --

    async def update(self, item_id: str | UUID, data: dict[str, Any]) -> ModelT | None:
        """Update an existing row. Returns None if not found."""
        item = await self.get(item_id)
        if not item:
            return None

        for key, value in data.items():
            if hasattr(item, key) and key not in ("id", "created_at"):
                setattr(item, key, value)

        await self.session.flush()
        return item


def _as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))
