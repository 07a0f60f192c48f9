import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.config import Settings
from app.models.listing import Listing, ListingStatus
from app.models.user import User
from app.services import listing_store
from app.services.events import expiring_soon_event
from app.services.notifications import NotificationDispatcher
from app.utils.clock import to_utc, utcnow

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "expiration-sweep"


@dataclass
class SweepResult:
    notifications_sent: int
    listings_expired: int


def warn_expiring(
    session: Session,
    dispatcher: NotificationDispatcher,
    settings: Settings,
    now: datetime,
) -> int:
    threshold = now + timedelta(hours=settings.expiry_warning_hours)

    expiring = session.exec(
        select(Listing)
        .where(Listing.status == ListingStatus.CLAIMED)
        .where(Listing.available_until > now)
        .where(Listing.available_until <= threshold)
        .where(Listing.expiry_notified == False)  # noqa: E712
    ).all()

    sent = 0
    for listing in expiring:
        # the latch decides which sweep warns, so a listing is warned at most once
        if not listing_store.latch_expiry_notified(session, listing.id):
            continue

        donor = session.get(User, listing.created_by)
        try:
            dispatcher.dispatch(session, expiring_soon_event(listing, donor, now))
            sent += 1
        except Exception:
            session.rollback()
            logger.exception("Failed to send expiring-soon notification", extra={"listing_id": str(listing.id)})

    return sent


def run_sweep(
    session: Session,
    dispatcher: NotificationDispatcher,
    settings: Settings,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Warn claimants of listings about to expire, then expire overdue listings."""
    now = to_utc(now) if now else utcnow()

    sent = warn_expiring(session, dispatcher, settings, now)
    expired = listing_store.expire_overdue(session, now)

    logger.info("Expiration sweep finished", extra={"notifications_sent": sent, "listings_expired": expired})
    return SweepResult(notifications_sent=sent, listings_expired=expired)


def start_scheduler(engine: Engine, dispatcher: NotificationDispatcher, settings: Settings) -> BackgroundScheduler:
    def job():
        with Session(engine) as session:
            try:
                run_sweep(session, dispatcher, settings)
            except Exception:
                logger.exception("Expiration sweep failed")

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        job,
        trigger=IntervalTrigger(minutes=settings.sweep_interval_minutes),
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )
    scheduler.start()

    logger.info("Expiration sweeper started", extra={"interval_minutes": settings.sweep_interval_minutes})
    return scheduler
