"""FastAPI dependency injection functions."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.security import get_current_user, TokenPayload
from db.database import AsyncSessionLocal

logger = logging.getLogger(__name__)


async def get_db() -> AsyncSession:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_current_active_user(
    current_user: TokenPayload = Depends(get_current_user),
) -> TokenPayload:
    """
    Get the current caller from a verified bearer token.

    Accounts are managed by the identity service that issues the tokens,
    so no directory lookup happens here.

    Returns:
        Current user token payload
    """
    return current_user
