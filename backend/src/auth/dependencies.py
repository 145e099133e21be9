# pyright: reportMissingTypeStubs=false
"""
Authentication dependencies for FastAPI.

Turns a bearer token into the UserContext that services use for ownership
checks. Services receive the context explicitly; nothing reads the request.
"""

import logging
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.constants import ROLE_DOCTOR, ROLE_PATIENT
from services.jwt_service import jwt_service, TokenPayload

logger = logging.getLogger(__name__)


class UserContext:
    """Authenticated user context extracted from JWT token."""

    def __init__(self, user_id: int, role: str, email: str = ""):
        self.user_id = user_id
        self.role = role  # "doctor" or "patient"
        self.email = email

    def is_doctor(self) -> bool:
        return self.role == ROLE_DOCTOR

    def is_patient(self) -> bool:
        return self.role == ROLE_PATIENT

    def __repr__(self) -> str:
        return f"UserContext(user_id={self.user_id}, role='{self.role}')"


# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


def get_token_payload(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[TokenPayload]:
    """Extract and validate JWT token payload."""
    if not credentials:
        return None
    return jwt_service.verify_token(credentials.credentials)


def get_current_user(
    payload: Optional[TokenPayload] = Depends(get_token_payload)
) -> UserContext:
    """Get authenticated user context from JWT token."""
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication credentials not provided"
        )

    try:
        user_id = int(payload.sub)
    except ValueError:
        logger.warning(f"Token subject is not a user id: {payload.sub!r}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )

    return UserContext(user_id=user_id, role=payload.role, email=payload.email)


def require_doctor(user: UserContext = Depends(get_current_user)) -> UserContext:
    """Require the caller to hold the doctor role."""
    if not user.is_doctor():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Doctor access required"
        )
    return user


def require_patient(user: UserContext = Depends(get_current_user)) -> UserContext:
    """Require the caller to hold the patient role."""
    if not user.is_patient():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Patient access required"
        )
    return user
