from enum import Enum
from typing import Any, Dict, Optional
import uuid
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel
from datetime import datetime

from app.db.types import UTCDateTime
from app.utils.clock import utcnow


class NotificationType(str, Enum):
    NEW_LISTING = "new_listing"
    CLAIM = "claim"
    EXPIRING_SOON = "expiring_soon"
    COMPLETED = "completed"
    EVENT_REMINDER = "event_reminder"


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)

    # Ownership
    user_id: int = Field(foreign_key="users.id", index=True)

    # Notification fields
    type: NotificationType = Field(index=True)
    message: str
    urgent: bool = Field(default=False)

    listing_id: Optional[uuid.UUID] = Field(
        default=None,
        foreign_key="listings.id",
        index=True
    )

    # "metadata" is reserved on declarative classes
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON, nullable=False))

    is_read: bool = Field(default=False)
