"""API key authentication and current-user accessor.

Identity is established upstream; the gateway forwards the authenticated
user id and roles in headers. The storage core only uses them for audit
attribution.
"""

import secrets
from dataclasses import dataclass, field

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import APIKeyHeader

from fhirstore.config import settings

SYSTEM_USER_ID = "system"

api_key_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    """The caller a write is attributed to."""

    id: str = SYSTEM_USER_ID
    roles: tuple[str, ...] = field(default_factory=tuple)


SYSTEM_USER = CurrentUser()


async def verify_api_key(api_key: str | None = Depends(api_key_scheme)) -> str:
    """Validate the X-API-Key header against the configured key.

    Returns:
        The validated API key.

    Raises:
        HTTPException: 401 if the key is missing or invalid.
    """
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
        )

    if not secrets.compare_digest(api_key, settings.api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    return api_key


async def get_current_user(
    _api_key: str = Depends(verify_api_key),
    x_user_id: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> CurrentUser:
    """Resolve the current user from gateway headers.

    Falls back to the system user when no user id is forwarded.
    """
    roles = tuple(r.strip() for r in (x_user_roles or "").split(",") if r.strip())
    return CurrentUser(id=x_user_id or SYSTEM_USER_ID, roles=roles)
