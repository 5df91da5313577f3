"""
Authentication dependencies for role-based access control
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt

from ..core.security import decode_access_token


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str
    store_id: Optional[int] = None  # set on store staff tokens


def get_current_principal(request: Request) -> Principal:
    """
    Resolve the bearer credential in the Authorization header.

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired or has no usable subject
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header"
        )

    token = auth_header[7:]  # Remove "Bearer " prefix

    try:
        payload = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired"
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )

    subject = payload.get("sub")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject"
        )

    # Tokens without a role claim belong to customers
    store_id = payload.get("store_id")
    principal = Principal(
        user_id=user_id,
        role=payload.get("role") or "customer",
        store_id=int(store_id) if store_id is not None else None,
    )
    request.state.user_id = principal.user_id
    return principal


def get_current_user_id(request: Request) -> int:
    return get_current_principal(request).user_id


def require_role(required_role: str):
    """
    Dependency factory to require a specific role.

    Usage:
        @router.post("/endpoint")
        async def endpoint(principal: Principal = Depends(require_role("store"))):
            ...
    """
    def role_checker(request: Request) -> Principal:
        principal = get_current_principal(request)

        # Admin can access everything
        if principal.role == "admin":
            return principal

        if principal.role != required_role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{required_role}' required"
            )

        return principal

    return role_checker
