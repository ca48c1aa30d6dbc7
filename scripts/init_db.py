"""Script to initialize the database."""

import asyncio

from sqlalchemy import text

from app.database import engine
from app.models import metadata


async def init_db() -> None:
    """Initialize the database by creating all tables."""
    async with engine.begin() as conn:
        if engine.dialect.name == "postgresql":
            await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))

        # Create all tables, including the partial slot index
        await conn.run_sync(metadata.create_all)

        print("✓ Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
