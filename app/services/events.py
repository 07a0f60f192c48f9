"""
Events produced by listing transitions.

Transition functions return these instead of sending anything themselves;
the dispatcher turns them into stored notifications, pushes and emails.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from app.models.listing import Listing
from app.models.notification import NotificationType
from app.models.user import User


@dataclass
class NotificationEvent:
    user_id: int
    type: NotificationType
    message: str
    urgent: bool = False
    listing_id: Optional[uuid.UUID] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ClaimEmailEvent:
    to: str
    receiver_name: str
    listing_title: str
    quantity: float
    unit: str
    available_until: datetime
    address: str
    donor_name: str
    donor_email: Optional[str]
    qr_code: str
    claimed_at: datetime
    expires_at: datetime


Event = Union[NotificationEvent, ClaimEmailEvent]


def format_distance(km: float) -> str:
    return f"{km:.1f} km" if km >= 1 else f"{round(km * 1000)} m"


def new_listing_events(listing: Listing, donor: User, receivers: List[Tuple[User, float]]) -> List[Event]:
    return [
        NotificationEvent(
            user_id=receiver.id,
            listing_id=listing.id,
            type=NotificationType.NEW_LISTING,
            message=f"New food available: {listing.title} from {donor.display_name} ({format_distance(distance)} away)",
            metadata={"distance": round(distance, 2), "donorName": donor.display_name},
        )
        for receiver, distance in receivers
    ]


def claim_events(listing: Listing, donor: User, receiver: User) -> List[Event]:
    return [
        NotificationEvent(
            user_id=donor.id,
            listing_id=listing.id,
            type=NotificationType.CLAIM,
            message=f'Your listing "{listing.title}" was claimed by {receiver.display_name}',
            urgent=True,
            metadata={"claimerName": receiver.display_name, "claimerId": receiver.id},
        ),
        NotificationEvent(
            user_id=receiver.id,
            listing_id=listing.id,
            type=NotificationType.CLAIM,
            message=f'Claim successful for "{listing.title}" from {donor.display_name}',
            metadata={
                "pickupInstructions": listing.instructions,
                "donorName": donor.display_name,
                "qrExpiresAt": listing.qr_expires_at.isoformat(),
            },
        ),
        ClaimEmailEvent(
            to=receiver.email,
            receiver_name=receiver.display_name,
            listing_title=listing.title,
            quantity=listing.quantity,
            unit=listing.unit.value,
            available_until=listing.available_until,
            address=listing.address,
            donor_name=donor.display_name,
            donor_email=donor.email,
            qr_code=listing.qr_code,
            claimed_at=listing.claimed_at,
            expires_at=listing.qr_expires_at,
        ),
    ]


def expiring_soon_event(listing: Listing, donor: User, now: datetime) -> NotificationEvent:
    hours_left = max(math.floor((listing.available_until - now).total_seconds() / 3600), 0)
    return NotificationEvent(
        user_id=listing.claimed_by,
        listing_id=listing.id,
        type=NotificationType.EXPIRING_SOON,
        message=f'Hurry! "{listing.title}" from {donor.display_name} expires in {hours_left} hours',
        urgent=True,
        metadata={
            "expiryTime": listing.available_until.isoformat(),
            "hoursUntilExpiry": hours_left,
            "donorName": donor.display_name,
        },
    )


def completed_events(
    listing: Listing,
    donor: User,
    receiver: Optional[User],
    verifier: User,
    reward: int,
    now: datetime,
) -> List[Event]:
    events: List[Event] = [
        NotificationEvent(
            user_id=donor.id,
            listing_id=listing.id,
            type=NotificationType.COMPLETED,
            message=f'Pickup completed for "{listing.title}" by {verifier.display_name}',
            metadata={"completedBy": verifier.display_name, "completedAt": now.isoformat()},
        )
    ]

    if receiver is not None:
        events.append(
            NotificationEvent(
                user_id=receiver.id,
                listing_id=listing.id,
                type=NotificationType.COMPLETED,
                message=(
                    f'Pickup completed for "{listing.title}" from {donor.display_name}. '
                    f"Thank you for reducing food waste! {reward} tokens earned."
                ),
                metadata={
                    "completedBy": verifier.display_name,
                    "completedAt": now.isoformat(),
                    "tokensEarned": reward,
                },
            )
        )
    return events


def event_reminder_event(
    user_id: int,
    event_id: str,
    event_title: str,
    reminder_time: datetime,
    location: Optional[str] = None,
) -> NotificationEvent:
    return NotificationEvent(
        user_id=user_id,
        type=NotificationType.EVENT_REMINDER,
        message=f"Remember to log food after your event: {event_title}",
        urgent=True,
        metadata={
            "eventId": event_id,
            "eventTitle": event_title,
            "reminderTime": reminder_time.isoformat(),
            "location": location,
        },
    )
