from datetime import datetime
from typing import Optional

from sqlalchemy.types import DateTime, TypeDecorator

from app.utils.clock import to_utc


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always hands back aware UTC datetimes.

    SQLite keeps no offset, so values are stored as UTC wall time and the
    zone is reattached on load.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return to_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return to_utc(value)
