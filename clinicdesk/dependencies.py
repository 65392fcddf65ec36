"""FastAPI dependencies."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.core.redis_client import CacheManager, RateLimiter, get_redis_client
from clinicdesk.core.security import decode_access_token
from clinicdesk.database import get_db
from clinicdesk.schemas.users import Actor
from clinicdesk.services.directory_service import DirectoryService
from clinicdesk.services.payment_gateway import CardGateway, get_payment_gateway

# Security
security = HTTPBearer()


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> UUID:
    """
    Extract and validate user ID from JWT token.

    Args:
        credentials: Bearer token credentials

    Returns:
        User ID from token

    Raises:
        HTTPException: If token is invalid or expired
    """
    token = credentials.credentials
    payload = decode_access_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id_str = payload.get("sub")
    if user_id_str is None or not isinstance(user_id_str, str):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return UUID(user_id_str)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID format",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_actor(
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Actor:
    """
    Resolve the token subject to an Actor (role and correlation ids).

    Args:
        user_id: User ID from JWT token
        db: Database session

    Returns:
        Acting user

    Raises:
        HTTPException: If user not found or inactive
    """
    user = await DirectoryService(db).get_user(user_id)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user["is_active"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return Actor.model_validate(user)


def get_cache_manager() -> CacheManager | None:
    """Slot listing cache over the shared Redis client."""
    return CacheManager(get_redis_client())


def get_rate_limiter() -> RateLimiter | None:
    """Payment attempt limiter over the shared Redis client."""
    return RateLimiter(get_redis_client())


def get_card_gateway() -> CardGateway:
    """Card gateway adapter for the configured mode."""
    return get_payment_gateway()


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
CacheManagerDep = Annotated[CacheManager | None, Depends(get_cache_manager)]
RateLimiterDep = Annotated[RateLimiter | None, Depends(get_rate_limiter)]
CardGatewayDep = Annotated[CardGateway, Depends(get_card_gateway)]
