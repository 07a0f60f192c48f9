from enum import Enum
from typing import List, Optional
import uuid
from sqlalchemy import JSON, Column, Index, event
from sqlmodel import Field, SQLModel
from datetime import datetime

from app.db.types import UTCDateTime
from app.utils.clock import to_utc, utcnow


class ListingStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    EXPIRED = "expired"


class QuantityUnit(str, Enum):
    MEALS = "meals"
    KG = "kg"
    TRAYS = "trays"
    BOXES = "boxes"


class FoodType(str, Enum):
    COOKED = "cooked"
    PRODUCE = "produce"
    BAKERY = "bakery"
    PACKAGED = "packaged"
    BEVERAGES = "beverages"
    MIXED = "mixed"
    VEGETARIAN = "vegetarian"
    VEGAN = "vegan"


VEG_TYPES = {FoodType.VEGETARIAN.value, FoodType.VEGAN.value}


class Freshness(str, Enum):
    FRESH_HOT = "fresh-hot"
    FRESH_CHILLED = "fresh-chilled"
    FROZEN = "frozen"
    ROOM_TEMP = "room-temp"
    PACKAGED = "packaged"


class Listing(SQLModel, table=True):
    __tablename__ = "listings"
    __table_args__ = (
        # stands in for a 2dsphere index: the nearby query prefilters on a bounding box
        Index("ix_listings_geo_point", "geo_lat", "geo_lng"),
        Index("ix_listings_status_until", "status", "available_until"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    # Donor
    created_by: int = Field(foreign_key="users.id", index=True)

    # Food fields
    title: str
    types: List[str] = Field(sa_column=Column(JSON, nullable=False))
    quantity: float
    unit: QuantityUnit
    freshness: Freshness
    available_from: datetime = Field(sa_type=UTCDateTime)
    available_until: datetime = Field(sa_type=UTCDateTime)
    instructions: str = Field(default="")
    allow_partial: bool = Field(default=True)
    require_insulated: bool = Field(default=False)
    images: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    # Location as entered, plus the geographic point derived from it
    address: str
    latitude: float
    longitude: float
    geo_lat: Optional[float] = None
    geo_lng: Optional[float] = None

    status: ListingStatus = Field(default=ListingStatus.PUBLISHED)

    # Claim; only set while claimed or completed
    claimed_by: Optional[int] = Field(default=None, foreign_key="users.id", index=True)
    claimed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    response_time: Optional[int] = None  # minutes from creation to claim
    expiry_notified: bool = Field(default=False)
    # receiver whose claim lapsed when the listing expired
    expired_claimant: Optional[int] = Field(default=None, foreign_key="users.id")

    # QR claim token
    qr_code: Optional[str] = Field(default=None, index=True, unique=True)
    qr_generated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    qr_expires_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    qr_verified: bool = Field(default=False)
    qr_verified_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    qr_verified_by: Optional[int] = Field(default=None, foreign_key="users.id")

    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    reward_tokens: Optional[int] = None

    @property
    def is_veg(self) -> bool:
        return bool(VEG_TYPES.intersection(self.types))


def sync_derived_fields(listing: Listing) -> None:
    listing.geo_lat = listing.latitude
    listing.geo_lng = listing.longitude

    if to_utc(listing.available_until) < utcnow() and listing.status != ListingStatus.COMPLETED:
        listing.status = ListingStatus.EXPIRED
        if listing.claimed_by is not None:
            listing.expired_claimant = listing.claimed_by
            listing.claimed_by = None


@event.listens_for(Listing, "before_insert")
def _listing_before_insert(mapper, connection, target: Listing):
    sync_derived_fields(target)


@event.listens_for(Listing, "before_update")
def _listing_before_update(mapper, connection, target: Listing):
    target.updated_at = utcnow()
    sync_derived_fields(target)
