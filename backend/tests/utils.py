"""
Test utilities for Schedula tests.
"""

import jwt
from datetime import datetime, timedelta, timezone

from core.config import JWT_SECRET_KEY, JWT_ALGORITHM


def create_jwt_token(user_id: int, role: str, email: str = "user@example.com") -> str:
    """Create a bearer token the way the identity provider issues them."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "exp": now + timedelta(hours=1),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def auth_headers(user_id: int, role: str) -> dict:
    return {"Authorization": f"Bearer {create_jwt_token(user_id, role)}"}
