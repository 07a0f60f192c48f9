from enum import Enum
from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime

from app.db.types import UTCDateTime
from app.utils.clock import utcnow


class Role(str, Enum):
    DONOR = "donor"
    RECEIVER = "receiver"


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    google_id: Optional[str] = Field(default=None, index=True, unique=True)
    name: str
    email: str = Field(index=True)
    image: Optional[str] = None

    role: Role = Field(index=True)
    org_name: Optional[str] = None  # canteen / NGO display name
    is_verified: bool = Field(default=True)

    # Home location, used to fan out new-listing alerts to nearby receivers
    home_lat: Optional[float] = None
    home_lng: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.org_name or self.name
