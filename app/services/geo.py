import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlmodel import Session, select

from app.models.listing import Listing, ListingStatus
from app.utils.clock import to_utc, utcnow

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.32


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass
class NearbyListing:
    listing: Listing
    distance_km: float


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points, in kilometres."""
    dlat = math.radians(b.lat - a.lat)
    dlng = math.radians(b.lng - a.lng)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bounding_box(center: GeoPoint, radius_km: float) -> Tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lng, max_lng) enclosing the circle; never smaller than it."""
    dlat = radius_km / KM_PER_DEGREE_LAT
    min_lat = max(center.lat - dlat, -90.0)
    max_lat = min(center.lat + dlat, 90.0)

    # longitude degrees shrink towards the poles; widest at the box edge nearest a pole
    widest = max(abs(min_lat), abs(max_lat))
    cos_lat = math.cos(math.radians(widest))
    if cos_lat < 1e-6 or radius_km / (KM_PER_DEGREE_LAT * cos_lat) >= 180:
        return min_lat, max_lat, -180.0, 180.0

    dlng = radius_km / (KM_PER_DEGREE_LAT * cos_lat)
    return min_lat, max_lat, center.lng - dlng, center.lng + dlng


def find_nearby(
    session: Session,
    point: GeoPoint,
    radius_km: float,
    veg_only: bool = False,
    query: Optional[str] = None,
    exclude_donor: Optional[int] = None,
    now: Optional[datetime] = None,
    limit: int = 50,
) -> List[NearbyListing]:
    """
    Published, unexpired listings within ``radius_km`` of ``point``.

    Sorted by distance ascending (newest first on ties) and capped at
    ``limit``. Each result carries its distance rounded to two decimals.
    """
    now = to_utc(now) if now else utcnow()
    min_lat, max_lat, min_lng, max_lng = bounding_box(point, radius_km)

    stmt = (
        select(Listing)
        .where(Listing.status == ListingStatus.PUBLISHED)
        .where(Listing.available_until >= now)
        .where(Listing.geo_lat >= min_lat)
        .where(Listing.geo_lat <= max_lat)
    )

    # a box crossing the antimeridian wraps round
    if min_lng < -180:
        stmt = stmt.where(or_(Listing.geo_lng >= min_lng + 360, Listing.geo_lng <= max_lng))
    elif max_lng > 180:
        stmt = stmt.where(or_(Listing.geo_lng >= min_lng, Listing.geo_lng <= max_lng - 360))
    else:
        stmt = stmt.where(Listing.geo_lng >= min_lng).where(Listing.geo_lng <= max_lng)

    if exclude_donor is not None:
        stmt = stmt.where(Listing.created_by != exclude_donor)

    if query and query.strip():
        like = f"%{query.strip()}%"
        stmt = stmt.where(
            or_(
                Listing.title.ilike(like),
                Listing.address.ilike(like),
                Listing.instructions.ilike(like),
            )
        )

    results: List[NearbyListing] = []
    for listing in session.exec(stmt).all():
        if veg_only and not listing.is_veg:
            continue

        distance = haversine_km(point, GeoPoint(listing.geo_lat, listing.geo_lng))
        if distance <= radius_km:
            results.append(NearbyListing(listing=listing, distance_km=distance))

    results.sort(key=lambda r: (r.distance_km, -r.listing.created_at.timestamp()))

    for r in results[:limit]:
        r.distance_km = round(r.distance_km, 2)
    return results[:limit]
