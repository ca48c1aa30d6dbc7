"""User lookups for request authentication."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.users import users


class UserService:
    """Read-only access to mirrored user records."""

    @staticmethod
    async def get_user_by_id(db: AsyncSession, user_id: UUID) -> dict | None:
        """Get user by ID."""
        result = await db.execute(select(users).where(users.c.id == user_id))
        user = result.mappings().first()

        return dict(user) if user else None
