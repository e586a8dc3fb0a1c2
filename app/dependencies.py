"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuthenticationError, ErrorCodes, ForbiddenError
from app.core.rate_limit import enforce_rate_limit
from app.core.security import KEY_TYPE_SECRET, keys_match, parse_api_key
from app.db.session import get_db
from app.models.app import App
from app.stores import StoreAdapterFactory, get_store_factory

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Store adapter factory dependency
StoreFactory = Annotated[StoreAdapterFactory, Depends(get_store_factory)]


@dataclass
class ApiKeyContext:
    """The app an API key belongs to, and which of its keys was used."""

    app: App
    key_type: str

    @property
    def is_secret(self) -> bool:
        return self.key_type == KEY_TYPE_SECRET


# =============================================================================
# API key resolution
# =============================================================================

async def get_api_key_context(
    request: Request,
    db: DBSession,
    authorization: Annotated[Optional[str], Header()] = None,
) -> ApiKeyContext:
    """
    Resolve the calling app from its API key.

    Raises 401 if the key is missing, malformed or unknown, and 429 when
    the key is over its rate limit.
    """
    if not authorization:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_MISSING_KEY,
            message="API key required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parsed = parse_api_key(authorization)
    if parsed is None:
        raise AuthenticationError(headers={"WWW-Authenticate": "Bearer"})
    key, key_type = parsed

    column = App.secret_key if key_type == KEY_TYPE_SECRET else App.public_key
    result = await db.execute(select(App).where(column == key))
    app = result.scalar_one_or_none()

    stored = (app.secret_key if key_type == KEY_TYPE_SECRET else app.public_key) if app else ""
    if app is None or not keys_match(key, stored):
        logger.warning("Rejected unknown %s API key %s...", key_type, key[:7])
        raise AuthenticationError(headers={"WWW-Authenticate": "Bearer"})

    # Read by the New Relic middleware
    request.state.app_id = str(app.id)

    await enforce_rate_limit(f"{app.id}:{key_type}", key_type)
    return ApiKeyContext(app=app, key_type=key_type)


async def require_secret_key(
    context: Annotated[ApiKeyContext, Depends(get_api_key_context)],
) -> ApiKeyContext:
    """Like ``get_api_key_context`` but rejects public keys with 403."""
    if not context.is_secret:
        raise ForbiddenError()
    return context


# Type aliases for API key dependencies
CurrentApp = Annotated[ApiKeyContext, Depends(get_api_key_context)]
SecretApp = Annotated[ApiKeyContext, Depends(require_secret_key)]
