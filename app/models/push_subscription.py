from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime

from app.db.types import UTCDateTime
from app.utils.clock import utcnow


class PushSubscription(SQLModel, table=True):
    __tablename__ = "push_subscriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    user_id: int = Field(foreign_key="users.id", index=True, unique=True)

    # Browser PushSubscription JSON
    endpoint: str
    p256dh: str
    auth: str

    def as_subscription_info(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
        }
