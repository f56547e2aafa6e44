"""Password hashing and bearer-token auth for MoogShip accounts.

Tokens carry the account email (``sub``), numeric id (``uid``) and role.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import get_settings

settings = get_settings()
security = HTTPBearer(auto_error=False)

ALGORITHM = "HS256"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


def create_access_token(claims: dict, expires_delta: Optional[timedelta] = None) -> str:
    issued = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.jwt_expire_minutes)
    payload = {**claims, "iat": issued, "exp": issued + lifetime}
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def token_for_user(user) -> str:
    return create_access_token({"sub": user.email, "uid": user.id, "role": user.role})


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        raise _unauthorized("Invalid or expired token")


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """Dependency: token claims of the calling account."""
    if not credentials:
        raise _unauthorized("Not authenticated")
    claims = decode_token(credentials.credentials)
    if "uid" not in claims:
        raise _unauthorized("Invalid or expired token")
    return claims


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
