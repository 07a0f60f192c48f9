import logging
import secrets
import uuid
from typing import List, Optional
from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, UploadFile
from sqlmodel import Session

from app.config import Settings
from app.context import get_app_settings, get_dispatcher, get_storage
from app.db.db import get_session
from app.models.listing import ListingStatus
from app.models.user import Role, User
from app.schemas.listing import MAX_IMAGES, ListingCreate, ListingOut, VerifyPickupRequest
from app.services import analytics, lifecycle, listing_store
from app.services.geo import GeoPoint, find_nearby
from app.services.notifications import NotificationDispatcher, notify_new_listing
from app.services.sweeper import run_sweep
from app.utils.auth_helper import get_current_db_user, require_donor, require_receiver
from app.utils.errors import ListingNotFoundError
from app.utils.s3_service import ImageStorage

logger = logging.getLogger(__name__)

router = APIRouter()


def _pickup_details(listing, donor: User, qr_code: str, expires_at) -> dict:
    return {
        "id": str(listing.id),
        "status": listing.status.value,
        "claimedAt": listing.claimed_at,
        "qrCode": qr_code,
        "title": listing.title,
        "quantity": listing.quantity,
        "unit": listing.unit.value,
        "availableUntil": listing.available_until,
        "location": listing.address,
        "instructions": listing.instructions,
        "donorName": donor.display_name if donor else None,
        "expiresAt": expires_at,
    }


@router.post("", status_code=201)
def create_listing(
    payload: ListingCreate,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    donor: User = Depends(require_donor),
):
    listing = listing_store.create(session, payload, donor.id)

    notify_new_listing(session, dispatcher, listing, donor, settings.new_listing_notify_radius_km)

    return {"id": str(listing.id), "status": listing.status.value}


@router.post("/images")
async def upload_listing_images(
    images: List[UploadFile] = File(...),
    storage: ImageStorage = Depends(get_storage),
    donor: User = Depends(require_donor),
):
    if not storage.enabled:
        raise HTTPException(status_code=503, detail="Image storage is not configured")

    if len(images) > MAX_IMAGES:
        raise HTTPException(status_code=400, detail=f"At most {MAX_IMAGES} images per listing")

    keys = []
    for image in images:
        raw_bytes = await image.read()
        keys.append(storage.upload(raw_bytes, image.filename, donor.id))

    return {"images": keys}


@router.get("")
def get_my_listings(
    status: Optional[ListingStatus] = None,
    limit: int = Query(default=10, ge=1, le=100),
    session: Session = Depends(get_session),
    donor: User = Depends(require_donor),
):
    listings = listing_store.list_for_donor(session, donor.id, status=status, limit=limit)
    return {"listings": [ListingOut.from_listing(l) for l in listings]}


@router.get("/nearby")
def get_nearby_listings(
    lat: float = Query(ge=-90, le=90),
    lng: float = Query(ge=-180, le=180),
    radius_km: Optional[float] = Query(default=None, alias="radiusKm", gt=0),
    veg_only: bool = Query(default=False, alias="vegOnly"),
    query: Optional[str] = Query(default=None, max_length=100),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    user: User = Depends(get_current_db_user),
):
    radius = radius_km if radius_km is not None else settings.nearby_default_radius_km
    if radius > settings.nearby_max_radius_km:
        raise HTTPException(status_code=400, detail=f"radiusKm cannot exceed {settings.nearby_max_radius_km:g}")

    results = find_nearby(
        session,
        GeoPoint(lat, lng),
        radius,
        veg_only=veg_only,
        query=query,
        exclude_donor=user.id if user.role == Role.RECEIVER else None,
        limit=settings.nearby_result_limit,
    )

    return {
        "listings": [ListingOut.from_listing(r.listing, distance=r.distance_km) for r in results],
        "total": len(results),
        "searchParams": {"lat": lat, "lng": lng, "radiusKm": radius, "vegOnly": veg_only, "query": query or ""},
    }


@router.get("/stats")
def get_listing_stats(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    donor: User = Depends(require_donor),
):
    return analytics.donor_stats(session, donor.id, settings)


@router.post("/check-expirations")
def check_expirations(
    x_cron_secret: Optional[str] = Header(default=None),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    if settings.cron_secret and not secrets.compare_digest(x_cron_secret or "", settings.cron_secret):
        raise HTTPException(status_code=401, detail="Invalid cron secret")

    result = run_sweep(session, dispatcher, settings)

    return {
        "success": True,
        "expiringNotificationsSent": result.notifications_sent,
        "expiredListings": result.listings_expired,
    }


@router.post("/verify-pickup")
def verify_pickup(
    payload: VerifyPickupRequest,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    donor: User = Depends(require_donor),
):
    result = lifecycle.verify_pickup(session, payload.qr_code, donor, settings, listing_id=payload.listing_id)

    dispatcher.dispatch_all(session, result.events)

    return {
        "success": True,
        "message": "Pickup verified successfully",
        "tokensEarned": result.tokens_earned,
        "listing": {
            "id": str(result.listing.id),
            "title": result.listing.title,
            "status": result.listing.status.value,
            "donorName": result.donor.display_name,
        },
    }


@router.get("/{listing_id}")
def get_listing(
    listing_id: uuid.UUID,
    session: Session = Depends(get_session),
    storage: ImageStorage = Depends(get_storage),
    user: User = Depends(get_current_db_user),
):
    listing = listing_store.get(session, listing_id)
    if not listing:
        raise ListingNotFoundError()

    donor = session.get(User, listing.created_by)

    data = ListingOut.from_listing(listing).model_dump(mode="json")
    data["donor"] = {"name": donor.display_name, "email": donor.email} if donor else None
    if storage.enabled:
        data["imageUrls"] = [storage.signed_url(key) for key in listing.images]

    return data


@router.post("/{listing_id}/claim")
def claim_listing(
    listing_id: uuid.UUID,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    receiver: User = Depends(require_receiver),
):
    result = lifecycle.claim_listing(session, listing_id, receiver, settings)

    dispatcher.dispatch_all(session, result.events)

    return {
        "success": True,
        "listing": _pickup_details(result.listing, result.donor, result.qr_code, result.expires_at),
    }


@router.get("/{listing_id}/claim-details")
def get_claim_details(
    listing_id: uuid.UUID,
    session: Session = Depends(get_session),
    receiver: User = Depends(require_receiver),
):
    listing = lifecycle.get_claim_details(session, listing_id, receiver)
    donor = session.get(User, listing.created_by)

    return _pickup_details(listing, donor, listing.qr_code, listing.qr_expires_at)
