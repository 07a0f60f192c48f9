from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from app.config import Settings
from app.context import get_app_settings
from app.db.db import get_session
from app.models.user import User
from app.services.analytics import TimeRange, donor_impact
from app.utils.auth_helper import require_donor

router = APIRouter()


@router.get("")
def get_impact(
    time_range: TimeRange = Query(default=TimeRange.MONTH, alias="range"),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    donor: User = Depends(require_donor),
):
    """Impact report for the calling donor."""
    return donor_impact(session, donor.id, time_range, settings)
