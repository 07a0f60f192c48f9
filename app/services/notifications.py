"""
Notification dispatch.

Stores each notification and then tries every delivery channel. Channel
failures are logged and dropped: the listing transition that produced the
event has already been committed and must not be affected.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.config import Settings
from app.models.notification import Notification
from app.models.user import Role, User
from app.models.listing import Listing
from app.services.email_service import EmailSender
from app.services.events import ClaimEmailEvent, Event, NotificationEvent, new_listing_events
from app.services.geo import GeoPoint, haversine_km
from app.services.push_service import PushSender
from app.services.sse import NotificationBroker
from app.utils.errors import DeliveryError

logger = logging.getLogger(__name__)


def notification_payload(notification: Notification) -> Dict[str, Any]:
    return {
        "id": str(notification.id),
        "userId": notification.user_id,
        "listingId": str(notification.listing_id) if notification.listing_id else None,
        "type": notification.type.value,
        "message": notification.message,
        "urgent": notification.urgent,
        "read": notification.is_read,
        "metadata": notification.details,
        "createdAt": notification.created_at.isoformat(),
    }


class NotificationDispatcher:
    def __init__(
        self,
        push: Optional[PushSender] = None,
        email: Optional[EmailSender] = None,
        broker: Optional[NotificationBroker] = None,
    ):
        self.push = push
        self.email = email
        self.broker = broker

    @classmethod
    def from_settings(cls, settings: Settings, broker: NotificationBroker) -> "NotificationDispatcher":
        return cls(push=PushSender(settings), email=EmailSender(settings), broker=broker)

    def dispatch(self, session: Session, event: NotificationEvent) -> Notification:
        notification = Notification(
            user_id=event.user_id,
            listing_id=event.listing_id,
            type=event.type,
            message=event.message,
            urgent=event.urgent,
            details=dict(event.metadata),
        )
        session.add(notification)
        session.commit()
        session.refresh(notification)

        self._deliver(session, notification)
        return notification

    def _deliver(self, session: Session, notification: Notification) -> None:
        if self.broker is not None:
            try:
                self.broker.publish(notification.user_id, notification_payload(notification))
            except Exception:
                logger.exception("SSE publish failed", extra={"notification_id": str(notification.id)})

        if self.push is not None:
            try:
                self.push.send(session, notification)
            except Exception:
                session.rollback()
                logger.exception("Push delivery failed", extra={"notification_id": str(notification.id)})

    def send_email(self, event: ClaimEmailEvent) -> bool:
        if self.email is None:
            return False
        try:
            return self.email.send_claim_confirmation(event)
        except DeliveryError as e:
            logger.warning("Claim email not delivered", extra={"error": e.message})
            return False
        except Exception:
            logger.exception("Claim email delivery failed")
            return False

    def dispatch_all(self, session: Session, events: Iterable[Event]) -> List[Notification]:
        created: List[Notification] = []
        for event in events:
            if isinstance(event, ClaimEmailEvent):
                self.send_email(event)
                continue

            try:
                created.append(self.dispatch(session, event))
            except SQLAlchemyError:
                session.rollback()
                logger.exception("Failed to store notification", extra={"user_id": event.user_id})
        return created


def nearby_receivers(session: Session, listing: Listing, radius_km: float):
    """Verified receivers whose home location lies within ``radius_km`` of the listing."""
    receivers = session.exec(
        select(User)
        .where(User.role == Role.RECEIVER)
        .where(User.is_verified == True)  # noqa: E712
        .where(User.home_lat.is_not(None))
        .where(User.home_lng.is_not(None))
    ).all()

    origin = GeoPoint(listing.latitude, listing.longitude)
    matches = []
    for receiver in receivers:
        distance = haversine_km(origin, GeoPoint(receiver.home_lat, receiver.home_lng))
        if distance <= radius_km:
            matches.append((receiver, distance))

    matches.sort(key=lambda m: m[1])
    return matches


def notify_new_listing(
    session: Session,
    dispatcher: NotificationDispatcher,
    listing: Listing,
    donor: User,
    radius_km: float,
) -> List[Notification]:
    try:
        receivers = [(r, d) for r, d in nearby_receivers(session, listing, radius_km) if r.id != donor.id]
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not look up receivers for new listing", extra={"listing_id": str(listing.id)})
        return []

    created = dispatcher.dispatch_all(session, new_listing_events(listing, donor, receivers))
    logger.info("New listing notifications sent", extra={"listing_id": str(listing.id), "count": len(created)})
    return created
