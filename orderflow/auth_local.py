from datetime import datetime, timedelta, timezone
import jwt
from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from .core_settings import get_settings
from .domain.actor import Actor
from .infrastructure.db import get_db
from .infrastructure.repository import OrderRepository

settings = get_settings()

BEARER_PREFIX = "Bearer "


def create_access_token(subject: str, expires_minutes: int = None) -> str:
    now = datetime.now(timezone.utc)
    minutes = expires_minutes or settings.JWT_EXPIRES_MINUTES
    payload = {"sub": subject, "iat": now, "exp": now + timedelta(minutes=minutes)}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.PyJWTError:
        return None


def actor_for_token(db: Session, token: Optional[str]) -> Optional[Actor]:
    token_data = decode_access_token(token) if token else None
    if not token_data or not token_data.get("sub"):
        return None
    return OrderRepository(db).load_actor(token_data["sub"])


def current_actor(request: Request, db: Session = Depends(get_db)) -> Actor:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Missing token")
    token_data = decode_access_token(auth_header.split(" ", 1)[1])
    if not token_data:
        raise HTTPException(status_code=401, detail="Invalid token")
    actor = OrderRepository(db).load_actor(token_data.get("sub", ""))
    if actor is None:
        raise HTTPException(status_code=403, detail="User has no profile or role")
    return actor
