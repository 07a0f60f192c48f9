import math
from collections import Counter
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional

from sqlmodel import Session, func, select

from app.config import Settings
from app.models.listing import Listing, ListingStatus, QuantityUnit
from app.utils.clock import to_utc, utcnow

COUNTED_STATUSES = (ListingStatus.PUBLISHED, ListingStatus.CLAIMED, ListingStatus.COMPLETED)

# rough equivalences used on the impact card
KG_CO2_PER_CAR_MILE = 0.4
LITRES_PER_SHOWER = 65
KWH_PER_MEAL = 2.5

TREND_TOLERANCE = 0.10


class TimeRange(str, Enum):
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


RANGE_DAYS = {TimeRange.WEEK: 7, TimeRange.MONTH: 30, TimeRange.YEAR: 365}


def meals_equivalent(quantity: float, unit: QuantityUnit, settings: Settings) -> float:
    unit = QuantityUnit(unit)
    if unit == QuantityUnit.MEALS:
        return quantity
    factors = {
        QuantityUnit.KG: settings.meals_per_kg,
        QuantityUnit.TRAYS: settings.meals_per_tray,
        QuantityUnit.BOXES: settings.meals_per_box,
    }
    return quantity * factors[unit]


def average_response_time(listings: Iterable[Listing]) -> Optional[float]:
    times = [l.response_time for l in listings if l.response_time is not None]
    if not times:
        return None
    return sum(times) / len(times)


def response_trend(current: Optional[float], previous: Optional[float]) -> str:
    """Compare this window's average claim response time with the previous window's."""
    if current is None or previous is None or previous == 0:
        return "stable"
    if current < previous * (1 - TREND_TOLERANCE):
        return "improving"
    if current > previous * (1 + TREND_TOLERANCE):
        return "declining"
    return "stable"


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_month_start(moment: datetime) -> datetime:
    start = _month_start(moment)
    return _month_start(start - timedelta(days=1))


def _count(session: Session, donor_id: int, *conditions) -> int:
    query = select(func.count(Listing.id)).where(Listing.created_by == donor_id)
    for condition in conditions:
        query = query.where(condition)
    return session.exec(query).one()


def donor_stats(session: Session, donor_id: int, settings: Settings, now: Optional[datetime] = None) -> Dict:
    now = to_utc(now) if now else utcnow()

    listings = session.exec(
        select(Listing)
        .where(Listing.created_by == donor_id)
        .where(Listing.status.in_(COUNTED_STATUSES))
    ).all()

    total_meals = sum(meals_equivalent(l.quantity, l.unit, settings) for l in listings)
    total_weight = sum(l.quantity for l in listings if l.unit == QuantityUnit.KG)

    this_month = _month_start(now)
    last_month = _previous_month_start(now)
    counted = Listing.status.in_(COUNTED_STATUSES)

    this_month_count = _count(session, donor_id, counted, Listing.created_at >= this_month)
    last_month_count = _count(
        session, donor_id, counted, Listing.created_at >= last_month, Listing.created_at < this_month
    )

    if last_month_count > 0:
        monthly_growth = round((this_month_count - last_month_count) / last_month_count * 100)
    else:
        monthly_growth = 100 if this_month_count > 0 else 0

    completed = [l for l in listings if l.status == ListingStatus.COMPLETED]
    avg_response = average_response_time(completed)

    return {
        "totalMeals": round(total_meals, 2),
        "totalWeight": round(total_weight),
        "co2Saved": total_meals * settings.co2_per_meal_kg / 1000,
        "peopleFed": math.ceil(total_meals / settings.meals_per_person),
        "activeListings": _count(session, donor_id, Listing.status == ListingStatus.PUBLISHED),
        "completedPickups": len(completed),
        "monthlyGrowth": monthly_growth,
        "avgResponseTime": round(avg_response) if avg_response is not None else 0,
    }


def _window_listings(session: Session, donor_id: int, start: datetime, end: datetime) -> List[Listing]:
    return list(
        session.exec(
            select(Listing)
            .where(Listing.created_by == donor_id)
            .where(Listing.created_at >= start)
            .where(Listing.created_at < end)
            .order_by(Listing.created_at)
        ).all()
    )


def donor_impact(
    session: Session,
    donor_id: int,
    time_range: TimeRange,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Impact report for one donor over the last week, month or year.

    The response trend compares the average claim response time of this
    window with the window of equal length immediately before it.
    """
    now = to_utc(now) if now else utcnow()
    span = timedelta(days=RANGE_DAYS[time_range])
    start = now - span

    window = _window_listings(session, donor_id, start, now + timedelta(seconds=1))
    previous = _window_listings(session, donor_id, start - span, start)

    counted = [l for l in window if l.status in COUNTED_STATUSES]
    date_format = "%b" if time_range == TimeRange.YEAR else "%b %d"

    timeline: Dict[str, Dict] = {}
    for listing in counted:
        key = listing.created_at.strftime(date_format)
        meals = meals_equivalent(listing.quantity, listing.unit, settings)
        bucket = timeline.setdefault(key, {"date": key, "meals": 0, "co2": 0, "water": 0, "people": 0, "count": 0})
        bucket["meals"] += meals
        bucket["co2"] += meals * settings.co2_per_meal_kg
        bucket["water"] += meals * settings.water_per_meal_l
        bucket["people"] += math.ceil(meals / settings.meals_per_person)
        bucket["count"] += 1

    totals = {k: sum(b[k] for b in timeline.values()) for k in ("meals", "co2", "water", "people", "count")}

    completed = [l for l in counted if l.status == ListingStatus.COMPLETED]
    completion_rate = round(len(completed) / totals["count"] * 100) if totals["count"] else 0

    current_avg = average_response_time(window)
    previous_avg = average_response_time(previous)

    type_counts = Counter(t for l in window for t in l.types)
    distribution = [
        {"type": t, "percentage": round(count / len(window) * 100)}
        for t, count in type_counts.most_common()
    ]

    return {
        "timeline": list(timeline.values()),
        "impactSummary": {
            "totalCO2Saved": totals["co2"],
            "totalWaterSaved": totals["water"],
            "equivalentCarMiles": round(totals["co2"] / KG_CO2_PER_CAR_MILE),
            "equivalentShowers": round(totals["water"] / LITRES_PER_SHOWER),
            "equivalentEnergy": round(totals["meals"] * KWH_PER_MEAL),
        },
        "totals": totals,
        "foodTypeDistribution": distribution,
        "completionRate": completion_rate,
        "responseTimes": {
            "average": round(current_avg) if current_avg is not None else 0,
            "previous": round(previous_avg) if previous_avg is not None else None,
            "trend": response_trend(current_avg, previous_avg),
        },
    }
