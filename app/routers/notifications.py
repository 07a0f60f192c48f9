import asyncio
import uuid
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlmodel import Session, func, select

from app.config import Settings
from app.context import get_app_settings, get_broker, get_dispatcher
from app.db.db import get_session
from app.models.notification import Notification
from app.models.user import User
from app.services.events import event_reminder_event
from app.services.notifications import NotificationDispatcher, notification_payload
from app.services.sse import NotificationBroker, format_sse
from app.utils.auth_helper import bearer_scheme, decode_access_token, get_current_db_user, require_donor
from app.utils.clock import to_utc


router = APIRouter()

HEARTBEAT_SECONDS = 25


@router.get("")
def get_my_notifications(
    limit: int = Query(default=50, ge=1, le=100),
    unread_only: bool = False,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    user: User = Depends(get_current_db_user),
):
    query = (
        select(Notification)
        .where(Notification.user_id == user.id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
    )

    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712

    notifications = session.exec(query).all()

    return {
        "notifications": [notification_payload(n) for n in notifications],
        "unreadCount": _unread_count(session, user.id),
        "pushSupported": settings.push_enabled,
    }


def _unread_count(session: Session, user_id: int) -> int:
    return session.exec(
        select(func.count(Notification.id))
        .where(Notification.user_id == user_id)
        .where(Notification.is_read == False)  # noqa: E712
    ).one()


@router.get("/count")
def get_unread_notifications_count(
    session: Session = Depends(get_session),
    user: User = Depends(get_current_db_user),
):
    return {"count": _unread_count(session, user.id)}


@router.post("/mark-all-read")
def mark_all_notifications_read(
    session: Session = Depends(get_session),
    user: User = Depends(get_current_db_user),
):
    result = session.execute(
        update(Notification)
        .where(Notification.user_id == user.id)
        .where(Notification.is_read == False)  # noqa: E712
        .values(is_read=True)
    )
    session.commit()

    return {"ok": True, "updated": result.rowcount}


@router.post("/{id}/mark-read")
def mark_notification_read(
    id: uuid.UUID,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_db_user),
):
    notif = session.exec(
        select(Notification)
        .where(Notification.id == id)
        .where(Notification.user_id == user.id)
    ).first()

    if not notif:
        raise HTTPException(
            status_code=404,
            detail="Notification not found"
        )

    notif.is_read = True
    session.add(notif)
    session.commit()

    return {"ok": True}


class EventReminderRequest(BaseModel):
    event_id: str = Field(alias="eventId", min_length=1)
    event_title: str = Field(alias="eventTitle", min_length=1, max_length=200)
    reminder_time: datetime = Field(alias="reminderTime")
    location: Optional[str] = Field(default=None, max_length=200)


@router.post("/reminders", status_code=201)
def create_event_reminder(
    payload: EventReminderRequest,
    session: Session = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    donor: User = Depends(require_donor),
):
    notification = dispatcher.dispatch(
        session,
        event_reminder_event(
            donor.id,
            payload.event_id,
            payload.event_title,
            to_utc(payload.reminder_time),
            payload.location,
        ),
    )
    return notification_payload(notification)


@router.get("/stream")
async def stream_notifications(
    request: Request,
    token: Optional[str] = Query(default=None),
    credentials=Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
    broker: NotificationBroker = Depends(get_broker),
):
    # EventSource cannot send headers, so the token may come as a query parameter
    raw_token = credentials.credentials if credentials else token
    if not raw_token:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    try:
        user_id = int(decode_access_token(raw_token, settings)["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    async def event_stream():
        queue = broker.subscribe(user_id)
        try:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                try:
                    payload = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(payload)
        finally:
            broker.unsubscribe(user_id, queue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
