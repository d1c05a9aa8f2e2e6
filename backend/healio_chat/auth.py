from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config

security = HTTPBearer()


def create_token(user_id: str, name: str = None, avatar: str = None, role: str = "User",
                 expires_in: timedelta = timedelta(hours=24)) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "name": name,
        "avatar": avatar,
        "role": role,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def decode_token(token: str) -> Optional[dict]:
    """Return the sender record carried by the token, or None if it is invalid."""
    try:
        data = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    except jwt.PyJWTError:
        return None
    if not data.get("sub"):
        return None
    return {
        "_id": data["sub"],
        "name": data.get("name") or "Unknown",
        "avatar": data.get("avatar"),
        "role": data.get("role") or "User",
    }


def auth_required(creds: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    sender = decode_token(creds.credentials)
    if sender is None:
        raise HTTPException(status_code=401, detail="invalid token")
    return sender
