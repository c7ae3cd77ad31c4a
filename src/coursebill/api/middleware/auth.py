"""Bearer-token principal resolution.

Tokens are issued by the platform's identity layer; this service only
verifies them and reads `sub` (the customer id) and `role`.
"""

from typing import Optional
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from coursebill.core import get_logger, settings

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class Principal:
    """Authenticated caller of a request."""

    def __init__(self, subject: UUID, role: Optional[str] = None):
        self.subject = subject
        self.role = role

    @property
    def customer_id(self) -> UUID:
        return self.subject

    @property
    def is_admin(self) -> bool:
        return self.role in settings.admin_roles


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Raises HTTPException(401) on failure."""
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("Token validation failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_principal(
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    """Require a valid bearer token."""
    if bearer is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(bearer.credentials)
    try:
        subject = UUID(str(payload["sub"]))
    except (KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token subject is not a customer id",
        )
    return Principal(subject=subject, role=payload.get("role"))


async def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """Require an administrative role."""
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return principal
