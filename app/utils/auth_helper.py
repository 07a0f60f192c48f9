from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from sqlmodel import Session

from app.config import Settings
from app.context import get_app_settings
from app.db.db import get_session
from app.models.user import Role, User

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user: User, settings: Settings, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "role": user.role.value,
        "iat": now,
        "exp": now + timedelta(minutes=settings.access_token_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def get_current_user_required(
    token: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
):
    if not token:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    return decode_access_token(token.credentials, settings)


def get_db_user(session: Session, current_user) -> User:
    try:
        user_id = int(current_user["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = session.get(User, user_id)

    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    return user


def get_current_db_user(
    session: Session = Depends(get_session),
    current_user=Depends(get_current_user_required),
) -> User:
    return get_db_user(session, current_user)


def require_role(role: Role):
    """Dependency that resolves the caller and checks they hold ``role``."""

    def dependency(user: User = Depends(get_current_db_user)) -> User:
        if user.role != role:
            raise HTTPException(status_code=403, detail=f"Only {role.value}s can perform this action")
        return user

    return dependency


require_donor = require_role(Role.DONOR)
require_receiver = require_role(Role.RECEIVER)
