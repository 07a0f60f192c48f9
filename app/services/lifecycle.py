"""
Claim and pickup transitions for listings.

    published --claim--> claimed --verify pickup--> completed
    published|claimed --sweep--> expired

Each transition validates its preconditions, performs exactly one
conditional write through the listing store and returns the events that
should be dispatched. Nothing here sends notifications.
"""

import logging
import math
import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlmodel import Session

from app.config import Settings
from app.models.listing import Listing, ListingStatus, QuantityUnit
from app.models.user import Role, User
from app.services import listing_store
from app.services.events import Event, claim_events, completed_events
from app.utils.clock import to_utc, utcnow
from app.utils.errors import (
    ClaimTokenExpiredError,
    ClaimTokenNotFoundError,
    ClaimTokenUsedError,
    ConfigError,
    ListingNotFoundError,
    ListingUnavailableError,
    RoleNotPermittedError,
)

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits


@dataclass
class ClaimResult:
    listing: Listing
    qr_code: str
    expires_at: datetime
    donor: User
    events: List[Event] = field(default_factory=list)


@dataclass
class PickupResult:
    listing: Listing
    tokens_earned: int
    donor: User
    receiver: Optional[User]
    events: List[Event] = field(default_factory=list)


def ensure_role(user: User, role: Role) -> None:
    if user.role != role:
        raise RoleNotPermittedError(f"Only {role.value}s can perform this action")


def mint_token(length: int) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def compute_reward(quantity: float, unit: QuantityUnit, multipliers: Dict[str, float]) -> int:
    try:
        factor = multipliers[QuantityUnit(unit).value]
    except KeyError:
        raise ConfigError(f"No reward multiplier configured for unit '{unit}'")
    return math.floor(quantity * factor)


def _minutes_between(start: datetime, end: datetime) -> int:
    return max(math.floor((end - start).total_seconds() / 60), 0)


def claim_listing(
    session: Session,
    listing_id: uuid.UUID,
    receiver: User,
    settings: Settings,
    now: Optional[datetime] = None,
) -> ClaimResult:
    ensure_role(receiver, Role.RECEIVER)
    now = to_utc(now) if now else utcnow()

    listing = listing_store.get(session, listing_id)
    if listing is None:
        raise ListingNotFoundError()

    if listing.status != ListingStatus.PUBLISHED or listing.available_until < now:
        raise ListingUnavailableError()

    code = _unique_code(session, settings.qr_token_length)
    expires_at = now + timedelta(hours=settings.qr_token_ttl_hours)

    won = listing_store.update_status(
        session,
        listing.id,
        ListingStatus.PUBLISHED,
        ListingStatus.CLAIMED,
        claimed_by=receiver.id,
        claimed_at=now,
        response_time=_minutes_between(listing.created_at, now),
        qr_code=code,
        qr_generated_at=now,
        qr_expires_at=expires_at,
        qr_verified=False,
    )
    if not won:
        # another receiver or the sweeper got there first
        raise ListingUnavailableError()

    listing = listing_store.get(session, listing_id)
    donor = session.get(User, listing.created_by)

    logger.info(
        "Listing claimed",
        extra={"listing_id": str(listing.id), "receiver_id": receiver.id, "response_time": listing.response_time},
    )

    return ClaimResult(
        listing=listing,
        qr_code=code,
        expires_at=expires_at,
        donor=donor,
        events=claim_events(listing, donor, receiver),
    )


def _unique_code(session: Session, length: int) -> str:
    code = mint_token(length)
    # qr_code is uniquely indexed as well
    while listing_store.find_by_code(session, code) is not None:
        code = mint_token(length)
    return code


def _check_token(listing: Listing, now: datetime) -> None:
    if listing.qr_expires_at is None or listing.qr_expires_at < now:
        raise ClaimTokenExpiredError()
    if listing.qr_verified:
        raise ClaimTokenUsedError()
    if listing.status != ListingStatus.CLAIMED:
        raise ListingUnavailableError("This listing is no longer awaiting pickup")


def verify_pickup(
    session: Session,
    code: str,
    verifier: User,
    settings: Settings,
    now: Optional[datetime] = None,
    listing_id: Optional[uuid.UUID] = None,
) -> PickupResult:
    ensure_role(verifier, Role.DONOR)
    now = to_utc(now) if now else utcnow()

    listing = listing_store.find_by_code(session, code)
    if listing is None or (listing_id is not None and listing.id != listing_id):
        raise ClaimTokenNotFoundError()

    if listing.created_by != verifier.id:
        raise RoleNotPermittedError("Only the donor of this listing can verify its pickup")

    _check_token(listing, now)

    reward = compute_reward(listing.quantity, listing.unit, settings.reward_multipliers)

    if not listing_store.consume_token(session, listing.id, code, verifier.id, now, reward):
        # lost a race: report whatever state won
        listing = listing_store.get(session, listing.id)
        _check_token(listing, now)
        raise ListingUnavailableError("This listing is no longer awaiting pickup")

    listing = listing_store.get(session, listing.id)
    donor = session.get(User, listing.created_by)
    receiver = session.get(User, listing.claimed_by) if listing.claimed_by else None

    logger.info(
        "Pickup verified",
        extra={"listing_id": str(listing.id), "verifier_id": verifier.id, "tokens_earned": reward},
    )

    return PickupResult(
        listing=listing,
        tokens_earned=reward,
        donor=donor,
        receiver=receiver,
        events=completed_events(listing, donor, receiver, verifier, reward, now),
    )


def get_claim_details(session: Session, listing_id: uuid.UUID, receiver: User) -> Listing:
    ensure_role(receiver, Role.RECEIVER)

    listing = listing_store.get(session, listing_id)
    if (
        listing is None
        or listing.claimed_by != receiver.id
        or listing.status != ListingStatus.CLAIMED
        or not listing.qr_code
    ):
        raise ListingNotFoundError("Claim not found or QR code not generated")
    return listing
