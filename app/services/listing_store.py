"""
Persistence for listings.

Every status change goes through a single conditional UPDATE keyed on the
expected current status, so two racing transitions (a claim and a sweep, two
claims, two scans of the same QR code) can never both succeed: the database
applies one and the other's UPDATE matches zero rows.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import update
from sqlmodel import Session, select

from app.models.listing import Listing, ListingStatus
from app.schemas.listing import ListingCreate, validate_listing_payload
from app.utils.clock import utcnow
from app.utils.errors import ListingValidationError
from app.utils.s3_service import image_key_prefix

logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = (ListingStatus.PUBLISHED, ListingStatus.CLAIMED)

# an expired listing keeps no claimant; the lapsed one is kept for history
RELEASE_CLAIM = {"claimed_by": None, "expired_claimant": Listing.claimed_by}


def create(
    session: Session,
    payload: Union[ListingCreate, Dict[str, Any]],
    donor_id: int,
) -> Listing:
    data = validate_listing_payload(payload)

    prefix = image_key_prefix(donor_id)
    foreign = [key for key in data.images if not key.startswith(prefix) or ".." in key]
    if foreign:
        raise ListingValidationError(f"images: only keys uploaded by this donor are allowed ({foreign[0]})")

    listing = Listing(
        created_by=donor_id,
        title=data.title,
        types=[t.value for t in data.types],
        quantity=data.quantity,
        unit=data.unit,
        freshness=data.freshness,
        available_from=data.available_from,
        available_until=data.available_until,
        address=data.location.address.strip(),
        latitude=data.location.lat,
        longitude=data.location.lng,
        instructions=data.instructions,
        allow_partial=data.allow_partial,
        require_insulated=data.require_insulated,
        images=list(data.images),
        status=ListingStatus.PUBLISHED,
    )

    session.add(listing)
    session.commit()
    session.refresh(listing)

    logger.info("Listing created", extra={"listing_id": str(listing.id), "donor_id": donor_id})
    return listing


def get(session: Session, listing_id: uuid.UUID) -> Optional[Listing]:
    return session.get(Listing, listing_id, populate_existing=True)


def find_by_code(session: Session, code: str) -> Optional[Listing]:
    return session.exec(
        select(Listing)
        .where(Listing.qr_code == code)
        .execution_options(populate_existing=True)
    ).first()


def list_for_donor(
    session: Session,
    donor_id: int,
    status: Optional[ListingStatus] = None,
    limit: int = 10,
) -> List[Listing]:
    expire_overdue(session, utcnow(), donor_id=donor_id)

    query = (
        select(Listing)
        .where(Listing.created_by == donor_id)
        .order_by(Listing.created_at.desc())
        .limit(limit)
    )

    if status:
        query = query.where(Listing.status == status)

    return list(session.exec(query).all())


def update_status(
    session: Session,
    listing_id: uuid.UUID,
    from_status: Union[ListingStatus, Iterable[ListingStatus]],
    to_status: ListingStatus,
    **fields: Any,
) -> bool:
    """
    Move a listing from ``from_status`` to ``to_status`` in one statement.

    Extra column values in ``fields`` are written in the same UPDATE. Returns
    False when the stored status did not match, meaning another transition
    got there first.
    """
    expected = [from_status] if isinstance(from_status, ListingStatus) else list(from_status)
    if to_status == ListingStatus.EXPIRED:
        fields = {**RELEASE_CLAIM, **fields}

    stmt = (
        update(Listing)
        .where(Listing.id == listing_id)
        .where(Listing.status.in_(expected))
        .values(status=to_status, updated_at=utcnow(), **fields)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    session.commit()

    won = result.rowcount == 1
    if won:
        logger.info(
            "Listing status changed",
            extra={"listing_id": str(listing_id), "to_status": to_status.value},
        )
    else:
        logger.info(
            "Listing status change lost",
            extra={"listing_id": str(listing_id), "to_status": to_status.value},
        )
    return won


def consume_token(
    session: Session,
    listing_id: uuid.UUID,
    code: str,
    verifier_id: int,
    now: datetime,
    reward: int,
) -> bool:
    """Check-and-set of the QR token: matching code, unverified, unexpired, still claimed."""
    stmt = (
        update(Listing)
        .where(Listing.id == listing_id)
        .where(Listing.qr_code == code)
        .where(Listing.status == ListingStatus.CLAIMED)
        .where(Listing.qr_verified == False)  # noqa: E712
        .where(Listing.qr_expires_at >= now)
        .values(
            status=ListingStatus.COMPLETED,
            qr_verified=True,
            qr_verified_at=now,
            qr_verified_by=verifier_id,
            completed_at=now,
            reward_tokens=reward,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    session.commit()
    return result.rowcount == 1


def latch_expiry_notified(session: Session, listing_id: uuid.UUID) -> bool:
    stmt = (
        update(Listing)
        .where(Listing.id == listing_id)
        .where(Listing.expiry_notified == False)  # noqa: E712
        .values(expiry_notified=True)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    session.commit()
    return result.rowcount == 1


def expire_overdue(session: Session, now: datetime, donor_id: Optional[int] = None) -> int:
    stmt = (
        update(Listing)
        .where(Listing.available_until < now)
        .where(Listing.status.in_(EXPIRABLE_STATUSES))
        .values(status=ListingStatus.EXPIRED, updated_at=utcnow(), **RELEASE_CLAIM)
        .execution_options(synchronize_session=False)
    )
    if donor_id is not None:
        stmt = stmt.where(Listing.created_by == donor_id)

    result = session.execute(stmt)
    session.commit()

    if result.rowcount:
        logger.info("Expired overdue listings", extra={"count": result.rowcount})
    return result.rowcount
