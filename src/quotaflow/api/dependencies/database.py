"""Database session dependency."""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.core.database import Database


def get_database(request: Request) -> Database:
    """Database handle owned by the application."""
    return request.app.state.database


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session for one request.

    Commits when the handler returns and rolls back if it raises.
    """
    database = get_database(request)
    async with database.session() as session:
        yield session
