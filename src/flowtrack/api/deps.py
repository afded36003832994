"""API dependencies."""

import logging
import secrets
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from flowtrack.config import Environment, settings
from flowtrack.engine import FlowTrackEngine
from flowtrack.search.synchronizer import IndexSynchronizer

logger = logging.getLogger("flowtrack.api")

DEV_ORGANIZATION_ID = UUID("00000000-0000-0000-0000-000000000000")
DEV_USER_ID = UUID("00000000-0000-0000-0000-000000000001")


def _insecure_dev() -> bool:
    return settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with request.app.state.database.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_synchronizer(request: Request) -> Optional[IndexSynchronizer]:
    return getattr(request.app.state, "synchronizer", None)


async def get_engine(
    session: AsyncSession = Depends(get_db_session),
    synchronizer: Optional[IndexSynchronizer] = Depends(get_synchronizer),
) -> FlowTrackEngine:
    return FlowTrackEngine(session, synchronizer)


def _parse_uuid_header(value: str | None, name: str, dev_default: UUID) -> UUID:
    if value:
        try:
            return UUID(value)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid {name} format")

    if _insecure_dev():
        return dev_default

    raise HTTPException(status_code=401, detail=f"Missing {name}")


async def get_organization_id(
    x_organization_id: str | None = Header(None, alias="X-Organization-ID"),
) -> UUID:
    """
    Extract the tenant from the request.

    Identity is issued elsewhere; the caller's organization arrives in a
    header set by the upstream gateway.
    """
    return _parse_uuid_header(x_organization_id, "organization ID", DEV_ORGANIZATION_ID)


async def get_user_id(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> UUID:
    """Extract the acting user from the request."""
    return _parse_uuid_header(x_user_id, "user ID", DEV_USER_ID)


async def verify_api_key(
    authorization: str | None = Header(None),
    x_api_key: str | None = Header(None, alias="X-API-Key"),
) -> None:
    """
    Verify the shared API token.

    Fails closed: without a configured token, requests are rejected unless
    insecure dev mode is explicitly enabled.
    """
    if _insecure_dev():
        return

    api_key = None
    if authorization and authorization.startswith("Bearer "):
        api_key = authorization[7:]
    elif x_api_key:
        api_key = x_api_key

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Use Authorization: Bearer <key> or X-API-Key header",
        )

    if settings.api_key:
        if secrets.compare_digest(api_key, settings.api_key):
            return
        raise HTTPException(status_code=401, detail="Invalid API key")

    logger.error(
        "SECURITY VIOLATION: No API key configured. Set FLOWTRACK_API_KEY."
    )
    raise HTTPException(
        status_code=503,
        detail="Server misconfigured: authentication not properly initialized",
    )


def validate_auth_config() -> None:
    """
    Validate authentication configuration at startup.

    Raises:
        RuntimeError: If configuration is insecure for the current environment
    """
    if settings.allow_insecure_dev and settings.env != Environment.DEVELOPMENT:
        raise RuntimeError(
            f"SECURITY ERROR: allow_insecure_dev=true is only permitted in development. "
            f"Current environment: {settings.env.value}. "
            f"Set FLOWTRACK_ALLOW_INSECURE_DEV=false for {settings.env.value}."
        )

    if not settings.allow_insecure_dev and not settings.api_key:
        raise RuntimeError(
            "SECURITY ERROR: FLOWTRACK_API_KEY is not set. "
            "Set it, or enable FLOWTRACK_ALLOW_INSECURE_DEV in development."
        )

    if settings.allow_insecure_dev:
        logger.warning(
            "=" * 80 + "\n"
            "WARNING: Running in INSECURE DEV MODE\n"
            "  - Authentication is DISABLED\n"
            "  - Missing organization/user headers fall back to fixed dev IDs\n"
            "  - Set FLOWTRACK_ALLOW_INSECURE_DEV=false for any deployment\n"
            + "=" * 80
        )
    else:
        logger.info(f"Authentication enabled: shared API key for {settings.env.value}")
