from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from app.config import Settings
from app.context import get_app_settings
from app.db.db import get_session
from app.models.push_subscription import PushSubscription
from app.models.user import User
from app.utils.auth_helper import get_current_db_user
from app.utils.clock import utcnow


router = APIRouter()


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class SubscriptionRequest(BaseModel):
    endpoint: str = Field(min_length=1)
    keys: SubscriptionKeys


@router.get("/public-key")
def get_public_key(settings: Settings = Depends(get_app_settings)):
    return {"publicKey": settings.vapid_public_key, "enabled": settings.push_enabled}


@router.post("/subscribe")
def subscribe(
    payload: SubscriptionRequest,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_db_user),
):
    sub = session.exec(
        select(PushSubscription).where(PushSubscription.user_id == user.id)
    ).first()

    # one subscription per user; a new browser replaces the old one
    if sub:
        sub.endpoint = payload.endpoint
        sub.p256dh = payload.keys.p256dh
        sub.auth = payload.keys.auth
        sub.updated_at = utcnow()
    else:
        sub = PushSubscription(
            user_id=user.id,
            endpoint=payload.endpoint,
            p256dh=payload.keys.p256dh,
            auth=payload.keys.auth,
        )

    session.add(sub)
    session.commit()

    return {"ok": True}


@router.delete("/subscribe")
def unsubscribe(
    session: Session = Depends(get_session),
    user: User = Depends(get_current_db_user),
):
    sub = session.exec(
        select(PushSubscription).where(PushSubscription.user_id == user.id)
    ).first()

    if sub:
        session.delete(sub)
        session.commit()

    return {"ok": True}
