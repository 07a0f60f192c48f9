import json
import logging

from pywebpush import WebPushException, webpush
from sqlmodel import Session, select

from app.config import Settings
from app.models.notification import Notification, NotificationType
from app.models.push_subscription import PushSubscription

logger = logging.getLogger(__name__)

GONE_STATUSES = {404, 410}

TITLES = {
    NotificationType.NEW_LISTING: "New Food Available",
    NotificationType.CLAIM: "Claim Update",
    NotificationType.EXPIRING_SOON: "Expiring Soon",
    NotificationType.COMPLETED: "Pickup Completed",
    NotificationType.EVENT_REMINDER: "Event Reminder",
}


def build_push_payload(notification: Notification) -> dict:
    url = f"/listings/{notification.listing_id}" if notification.listing_id else "/dashboard/notifications"
    return {
        "title": TITLES.get(notification.type, "New Notification"),
        "body": notification.message,
        "icon": "/main_logo.png",
        "data": {"url": url},
    }


class PushSender:
    def __init__(self, settings: Settings):
        self._private_key = settings.vapid_private_key
        self._claims = {"sub": f"mailto:{settings.vapid_claims_email}"}
        self.enabled = settings.push_enabled

    def send(self, session: Session, notification: Notification) -> int:
        """Push to every subscription of the recipient; prunes endpoints that are gone."""
        if not self.enabled:
            return 0

        subscriptions = session.exec(
            select(PushSubscription).where(PushSubscription.user_id == notification.user_id)
        ).all()

        payload = json.dumps(build_push_payload(notification))
        sent = 0

        for sub in subscriptions:
            try:
                webpush(
                    subscription_info=sub.as_subscription_info(),
                    data=payload,
                    vapid_private_key=self._private_key,
                    vapid_claims=dict(self._claims),
                )
                sent += 1
            except WebPushException as e:
                status = getattr(e.response, "status_code", None)
                if status in GONE_STATUSES:
                    logger.info("Removing expired push subscription", extra={"user_id": sub.user_id})
                    session.delete(sub)
                    session.commit()
                else:
                    logger.warning("Push delivery failed", extra={"user_id": sub.user_id, "error": str(e)})

        return sent
