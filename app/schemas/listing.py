from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.models.listing import Freshness, FoodType, Listing, ListingStatus, QuantityUnit
from app.utils.clock import to_utc
from app.utils.errors import ListingValidationError


MAX_IMAGES = 5


class LocationIn(BaseModel):
    address: str = Field(min_length=3, max_length=200)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class ListingCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=3, max_length=100)
    types: List[FoodType] = Field(min_length=1)
    quantity: float = Field(gt=0)
    unit: QuantityUnit = QuantityUnit.MEALS
    freshness: Freshness = Freshness.FRESH_HOT
    available_from: datetime = Field(alias="availableFrom")
    available_until: datetime = Field(alias="availableUntil")
    location: LocationIn
    instructions: str = Field(default="", max_length=1000)
    allow_partial: bool = Field(default=True, alias="allowPartial")
    require_insulated: bool = Field(default=False, alias="requireInsulated")
    images: List[str] = Field(default_factory=list, max_length=MAX_IMAGES)

    @field_validator("title", "instructions")
    @classmethod
    def strip_text(cls, value: str) -> str:
        return value.strip()

    @field_validator("types")
    @classmethod
    def dedupe_types(cls, value: List[FoodType]) -> List[FoodType]:
        return list(dict.fromkeys(value))

    @field_validator("available_from", "available_until")
    @classmethod
    def normalise_datetime(cls, value: datetime) -> datetime:
        return to_utc(value)

    @model_validator(mode="after")
    def check_window(self):
        if self.available_from >= self.available_until:
            raise ValueError("availableFrom must be before availableUntil")
        return self


def validate_listing_payload(payload: Union[ListingCreate, Dict[str, Any]]) -> ListingCreate:
    if isinstance(payload, ListingCreate):
        return payload

    try:
        return ListingCreate.model_validate(payload)
    except ValidationError as e:
        raise ListingValidationError(
            "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'listing'}: {err['msg']}"
                for err in e.errors()
            )
        )


class LocationOut(BaseModel):
    address: str
    lat: float
    lng: float


class ListingOut(BaseModel):
    id: uuid.UUID
    title: str
    types: List[str]
    quantity: float
    unit: QuantityUnit
    freshness: Freshness
    availableFrom: datetime
    availableUntil: datetime
    location: LocationOut
    instructions: str
    allowPartial: bool
    requireInsulated: bool
    images: List[str]
    status: ListingStatus
    createdBy: int
    claimedBy: Optional[int] = None
    claimedAt: Optional[datetime] = None
    responseTime: Optional[int] = None
    createdAt: datetime
    distance: Optional[float] = None

    @classmethod
    def from_listing(cls, listing: Listing, distance: Optional[float] = None) -> "ListingOut":
        return cls(
            id=listing.id,
            title=listing.title,
            types=listing.types,
            quantity=listing.quantity,
            unit=listing.unit,
            freshness=listing.freshness,
            availableFrom=listing.available_from,
            availableUntil=listing.available_until,
            location=LocationOut(address=listing.address, lat=listing.latitude, lng=listing.longitude),
            instructions=listing.instructions,
            allowPartial=listing.allow_partial,
            requireInsulated=listing.require_insulated,
            images=listing.images,
            status=listing.status,
            createdBy=listing.created_by,
            claimedBy=listing.claimed_by,
            claimedAt=listing.claimed_at,
            responseTime=listing.response_time,
            createdAt=listing.created_at,
            distance=distance,
        )


class VerifyPickupRequest(BaseModel):
    qr_code: str = Field(alias="qrCode", min_length=1)
    listing_id: Optional[uuid.UUID] = Field(default=None, alias="listingId")

    @field_validator("qr_code")
    @classmethod
    def strip_code(cls, value: str) -> str:
        return value.strip()
