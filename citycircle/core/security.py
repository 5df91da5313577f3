"""
Bearer token helpers.

Tokens are issued by the CityCircle identity service; this API only decodes
them. create_access_token mints tokens with the same claims for local tooling
and tests.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from jose import jwt

from .config import settings

ACCESS_TOKEN_EXPIRE_MINUTES = 60


def create_access_token(
    subject: str,
    role: str = "customer",
    expires_delta: Optional[timedelta] = None,
    store_id: Optional[int] = None,
) -> str:
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": str(subject),
        "role": role,
        "aud": settings.JWT_AUDIENCE,
        "iss": settings.JWT_ISSUER,
        "exp": datetime.utcnow() + expires_delta,
        "iat": datetime.utcnow(),
    }
    if store_id is not None:
        payload["store_id"] = store_id
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode and verify a bearer token. Raises jose.JWTError when invalid."""
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[settings.ALGORITHM],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
        options={"verify_aud": True, "verify_iss": True},
    )
