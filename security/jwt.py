from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from core.config import settings

ADMIN_ROLE = "admin"
TOKEN_TYPE = "access"


def create_access_token(sub: str, extra: Dict[str, Any] | None = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "type": TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)).timestamp()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def create_admin_token(sub: str) -> str:
    """Access token for back-office callers (refunds, status changes, deletes)."""
    return create_access_token(sub, {"role": ADMIN_ROLE})


def decode_access(token: str) -> Dict[str, Any]:
    """Decode and check an access token; raises ``jwt.PyJWTError`` on any problem."""
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    if payload.get("type") != TOKEN_TYPE:
        raise jwt.InvalidTokenError("Not an access token")
    return payload
