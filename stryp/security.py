"""Sign-in origin check, JWT issue/verify and the current-user dependency."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlparse

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from stryp.config import ACCESS_TOKEN_EXPIRE_MINUTES, ALLOWED_ORIGINS, SECRET_KEY
from stryp.errors import AuthDomainError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login")


def check_origin(origin: Optional[str], allowed: list[str] = ALLOWED_ORIGINS):
    """Refuse sign-in from an origin that is not on the allow-list."""
    normalized = (origin or "").strip().rstrip("/")
    if normalized and normalized in allowed:
        return
    host = urlparse(normalized).netloc or normalized or "unknown origin"
    logger.warning("[auth] Sign-in refused for origin %s", host)
    raise AuthDomainError(
        f"Domain not authorized: {host}. Add it to ALLOWED_ORIGINS to enable sign-in from this host."
    )


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": user_id, "jti": str(uuid.uuid4()), "exp": expire}
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[str]:
    """The user id carried by a valid token, or None."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return None
    return payload.get("sub")


def get_current_user(token: str = Depends(oauth2_scheme)) -> str:
    user_id = decode_access_token(token)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id
