from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlmodel import Session

from app.db.db import get_session
from app.models.user import User
from app.utils.auth_helper import get_current_db_user


router = APIRouter()


class LocationUpdate(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


@router.get("/me")
def get_my_profile(user: User = Depends(get_current_db_user)):
    return user


@router.put("/location")
def set_location(
    payload: LocationUpdate,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_db_user),
):
    user.home_lat = payload.lat
    user.home_lng = payload.lng

    session.add(user)
    session.commit()
    session.refresh(user)

    return {"ok": True, "location": {"lat": user.home_lat, "lng": user.home_lng}}
