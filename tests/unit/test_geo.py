"""Tests for distance math and the nearby listings query."""

from datetime import timedelta

import pytest
from freezegun import freeze_time

from app.models.listing import ListingStatus
from app.services import listing_store
from app.services.geo import GeoPoint, bounding_box, find_nearby, haversine_km
from tests.utils.factories import CAMPUS, make_listing, offset_point


ORIGIN = GeoPoint(*CAMPUS)


def _at(session, donor, km_north, **kwargs):
    lat, lng = offset_point(km_north=km_north)
    return make_listing(session, donor, lat=lat, lng=lng, **kwargs)


@pytest.mark.unit
def test_haversine_one_degree_at_equator():
    assert haversine_km(GeoPoint(0, 0), GeoPoint(0, 1)) == pytest.approx(111.19, abs=0.05)


@pytest.mark.unit
def test_haversine_is_symmetric():
    a, b = GeoPoint(12.97, 77.59), GeoPoint(13.08, 80.27)
    assert haversine_km(a, b) == pytest.approx(haversine_km(b, a))


@pytest.mark.unit
def test_bounding_box_covers_radius():
    min_lat, max_lat, min_lng, max_lng = bounding_box(ORIGIN, 10)
    north = GeoPoint(max_lat, ORIGIN.lng)
    east = GeoPoint(ORIGIN.lat, max_lng)
    assert haversine_km(ORIGIN, north) >= 9.9
    assert haversine_km(ORIGIN, east) >= 9.9
    assert min_lat < ORIGIN.lat < max_lat
    assert min_lng < ORIGIN.lng < max_lng


@pytest.mark.unit
def test_bounding_box_near_pole_spans_all_longitudes():
    _, _, min_lng, max_lng = bounding_box(GeoPoint(89.99, 10), 50)
    assert (min_lng, max_lng) == (-180.0, 180.0)


@pytest.mark.unit
def test_results_within_radius_sorted_by_distance(session, donor):
    far = _at(session, donor, 8)
    near = _at(session, donor, 1)
    mid = _at(session, donor, 3)

    results = find_nearby(session, ORIGIN, 5)

    assert [r.listing.id for r in results] == [near.id, mid.id]
    assert far.id not in {r.listing.id for r in results}
    assert results[0].distance_km == pytest.approx(1.0, abs=0.05)
    assert results[1].distance_km == pytest.approx(3.0, abs=0.05)
    assert results[0].distance_km == round(results[0].distance_km, 2)


@pytest.mark.unit
def test_only_published_unexpired_listings(session, donor):
    published = _at(session, donor, 1)
    claimed = _at(session, donor, 1)
    listing_store.update_status(session, claimed.id, ListingStatus.PUBLISHED, ListingStatus.CLAIMED)
    lapsed = _at(session, donor, 1, hours=1)

    results = find_nearby(session, ORIGIN, 5)
    assert {r.listing.id for r in results} == {published.id, lapsed.id}

    results = find_nearby(session, ORIGIN, 5, now=lapsed.available_until + timedelta(minutes=1))
    assert [r.listing.id for r in results] == [published.id]


@pytest.mark.unit
def test_published_listing_past_until_is_hidden(session, donor):
    listing = _at(session, donor, 1, hours=1)
    later = listing.available_until + timedelta(minutes=1)
    assert find_nearby(session, ORIGIN, 5, now=later) == []


@pytest.mark.unit
def test_ties_break_newest_first(session, donor):
    with freeze_time("2026-05-01 09:00:00") as frozen:
        older = _at(session, donor, 2)
        frozen.tick(timedelta(minutes=5))
        newer = _at(session, donor, 2)

        results = find_nearby(session, ORIGIN, 5)

    assert [r.listing.id for r in results] == [newer.id, older.id]


@pytest.mark.unit
def test_veg_only_filter(session, donor):
    veg = _at(session, donor, 1, types=["vegan", "bakery"])
    _at(session, donor, 1, types=["cooked"])

    results = find_nearby(session, ORIGIN, 5, veg_only=True)
    assert [r.listing.id for r in results] == [veg.id]


@pytest.mark.unit
def test_text_query_matches_title_and_address(session, donor):
    samosa = _at(session, donor, 1, title="Samosa trays")
    _at(session, donor, 1, title="Rice and dal")

    assert [r.listing.id for r in find_nearby(session, ORIGIN, 5, query="samosa")] == [samosa.id]
    assert len(find_nearby(session, ORIGIN, 5, query="canteen")) == 2


@pytest.mark.unit
def test_results_are_capped(session, donor):
    created = [_at(session, donor, km) for km in (0.5, 1, 1.5, 2, 2.5)]
    results = find_nearby(session, ORIGIN, 5, limit=3)
    assert [r.listing.id for r in results] == [l.id for l in created[:3]]


@pytest.mark.unit
def test_exclude_donor(session, donor):
    _at(session, donor, 1)
    assert find_nearby(session, ORIGIN, 5, exclude_donor=donor.id) == []


@pytest.mark.unit
def test_search_across_antimeridian(session, donor):
    listing = make_listing(session, donor, lat=0.0, lng=179.99)
    results = find_nearby(session, GeoPoint(0.0, -179.99), 5)
    assert [r.listing.id for r in results] == [listing.id]
    assert results[0].distance_km == pytest.approx(2.22, abs=0.05)
