"""
Authentication and authorization utilities for Orders service.

Validates JWT tokens issued by the Users service.
"""
import logging
import os
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# JWT settings (must match Users service)
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "09d25e094faa6ca2556c818166b7a9563b93f7099f6f0f4caa6cf63b88e8d3e7")
ALGORITHM = "HS256"
ADMIN_ROLE = "admin"
CLIENT_ROLE = "client"

# Security scheme for JWT bearer tokens
security = HTTPBearer()


class CurrentUser(BaseModel):
    """Current authenticated user information."""
    id: int
    email: str
    role: str
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def decode_token(token: str) -> CurrentUser:
    """
    Decode a bearer token into the user it was issued to.

    Raises:
        JWTError: if the token is invalid or expired
        ValueError: if required claims are missing
    """
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    user_id_str = payload.get("sub")
    email = payload.get("email")
    role = payload.get("role")
    if user_id_str is None or email is None or role is None:
        raise ValueError("Token is missing required claims")
    return CurrentUser(id=int(user_id_str), email=email, role=role, token=token)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Args:
        credentials: HTTP Authorization credentials (injected)

    Returns:
        Current authenticated user information

    Raises:
        HTTPException: 401 if token is invalid
    """
    try:
        return decode_token(credentials.credentials)
    except (JWTError, ValueError) as e:
        logger.error(f"JWT validation error: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Args:
        current_user: Current authenticated user (injected)

    Returns:
        Current user if they are an admin

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user


def require_client(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency for customer actions; admins may act as customers too.

    Raises:
        HTTPException: 403 if the role is neither client nor admin
    """
    if current_user.role not in (CLIENT_ROLE, ADMIN_ROLE):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Client or admin access required"
        )
    return current_user
