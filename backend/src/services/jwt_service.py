"""
JWT verification for bearer tokens issued by the identity provider.

Token issuance and refresh live with the identity provider; this service
only decodes and validates access tokens.
"""

import logging
from typing import Optional

import jwt
from pydantic import BaseModel, ValidationError

from core.config import JWT_SECRET_KEY, JWT_ALGORITHM

logger = logging.getLogger(__name__)


class TokenPayload(BaseModel):
    """Payload structure for access tokens."""
    sub: str  # User ID
    email: str
    role: str  # "doctor" or "patient"
    iat: Optional[int] = None
    exp: Optional[int] = None


class JWTService:
    """Service for JWT token operations."""

    ALGORITHM = JWT_ALGORITHM

    @classmethod
    def verify_token(cls, token: str) -> Optional[TokenPayload]:
        """Verify and decode an access token. Returns None if invalid or expired."""
        try:
            payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[cls.ALGORITHM])
            return TokenPayload(**payload)
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired access token")
            return None
        except jwt.InvalidTokenError:
            return None
        except ValidationError as e:
            logger.warning(f"Access token has unexpected claims: {e}")
            return None


jwt_service = JWTService()
