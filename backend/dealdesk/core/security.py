# backend/dealdesk/core/security.py
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jose import jwt, JWTError

from .config import settings


@dataclass
class AccessClaims:
    user_id: int
    organization_id: int
    role_name: Optional[str] = None


def create_access_token(
    user_id: int,
    organization_id: int,
    role_name: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """Signs ``sub`` (user id, as a string), ``org`` and ``role`` claims."""
    expire = datetime.utcnow() + timedelta(
        minutes=expires_minutes if expires_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    claims = {"sub": str(user_id), "org": organization_id, "exp": expire}
    if role_name:
        claims["role"] = role_name
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> AccessClaims:
    """
    Verifies signature and expiry and returns the caller's claims.
    Raises ValueError for bad, expired or incomplete tokens.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        raise ValueError("Invalid token") from e

    sub, org = payload.get("sub"), payload.get("org")
    if sub is None or org is None:
        raise ValueError("Token lacks subject or organization")
    try:
        return AccessClaims(user_id=int(sub), organization_id=int(org), role_name=payload.get("role"))
    except (TypeError, ValueError) as e:
        raise ValueError("Malformed token claims") from e
