"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinicsync.server.database import Database
from clinicsync.server.models import Token
from clinicsync.server.ws import ChangeHub

# Security scheme
security = HTTPBearer(auto_error=False)


def get_db(request: Request) -> Database:
    """Get database from app state."""
    db: Database = request.app.state.db
    return db


def get_hub(request: Request) -> ChangeHub:
    """Get the change hub from app state."""
    hub: ChangeHub = request.app.state.hub
    return hub


def get_device_id(x_device_id: str | None = Header(default=None)) -> str | None:
    """Device that issued the request (used to tag change origins)."""
    return x_device_id


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Token:
    """Resolve the bearer token of the request, or answer 401."""
    if credentials is None:
        raise _unauthorized("Missing authentication credentials")
    token = get_db(request).validate_token(credentials.credentials)
    if token is None:
        raise _unauthorized("Invalid or revoked token")
    return token
