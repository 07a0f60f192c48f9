import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlmodel import Session, select
from google.oauth2 import id_token
from google.auth.transport import requests as grequests

from app.config import Settings
from app.context import get_app_settings
from app.db.db import get_session
from app.models.user import Role, User
from app.utils.auth_helper import create_access_token

logger = logging.getLogger(__name__)

router = APIRouter()


class GoogleIDToken(BaseModel):
    id_token: str
    # only read on first sign-in
    role: Optional[Role] = None
    org_name: Optional[str] = Field(default=None, alias="orgName", max_length=100)


class TokenResponse(BaseModel):
    access_token: str
    user_id: str
    role: Role


@router.post("/google", response_model=TokenResponse)
def google_auth(
    payload: GoogleIDToken,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
):
    if not settings.google_client_id:
        raise HTTPException(status_code=503, detail="Google sign-in is not configured")

    try:
        idinfo = id_token.verify_oauth2_token(payload.id_token, grequests.Request(), settings.google_client_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Google ID token")

    # idinfo now trusted and parsed by Google libs
    google_id = idinfo["sub"]

    db_user = session.exec(select(User).where(User.google_id == google_id)).first()
    if not db_user:
        if payload.role is None:
            raise HTTPException(status_code=400, detail="Choose donor or receiver to finish signing up")

        db_user = User(
            google_id=google_id,
            name=idinfo.get("name") or idinfo.get("email", "").split("@")[0],
            email=idinfo.get("email"),
            image=idinfo.get("picture"),
            role=payload.role,
            org_name=payload.org_name,
            is_verified=bool(idinfo.get("email_verified", False)),
        )
        session.add(db_user)
        session.commit()
        session.refresh(db_user)
        logger.info("User registered", extra={"user_id": db_user.id, "role": db_user.role.value})

    return TokenResponse(
        access_token=create_access_token(db_user, settings),
        user_id=str(db_user.id),
        role=db_user.role,
    )
