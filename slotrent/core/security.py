from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
from slotrent.core.config import settings

ALGORITHM = "HS256"

# Tokens are issued by the external auth service; this module only has to agree
# with it on the signing secret and claim layout.


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"exp": expire, "sub": str(subject)}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[str]:
    """Returns user ID (sub claim) or None if token is invalid/expired."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        if payload.get("type") == "refresh":
            return None
        return payload.get("sub")
    except JWTError:
        return None
